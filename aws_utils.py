import json
import logging

import boto3
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)


def get_secret(secret_name, region_name="us-east-2", key=None):
    """Reads a secret from AWS Secrets Manager.

    JSON secrets are decoded; when ``key`` is given only that field is returned.
    Returns None if the secret can't be read.
    """
    client = boto3.client("secretsmanager", region_name=region_name)

    try:
        response = client.get_secret_value(SecretId=secret_name)
    except ClientError as e:
        logger.error("Error retrieving secret %s: %s", secret_name, e)
        return None

    secret = response.get("SecretString")
    if secret is None:
        secret = response["SecretBinary"].decode("utf-8")
    if key is None:
        return secret

    try:
        return json.loads(secret).get(key)
    except (ValueError, AttributeError):
        # Plain-text secret, the whole value is the one we want
        return secret
