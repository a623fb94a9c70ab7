from .errors import ExternalCapabilityFailure, HarvestError, LookupFailure, MalformedInput, ValidationError
from .models import OutcomeCategory, SessionState
from .session import HarvestContext, HarvestSession, PermissionPolicy

__all__ = [
    "ExternalCapabilityFailure",
    "HarvestContext",
    "HarvestError",
    "HarvestSession",
    "LookupFailure",
    "MalformedInput",
    "OutcomeCategory",
    "PermissionPolicy",
    "SessionState",
    "ValidationError",
]
