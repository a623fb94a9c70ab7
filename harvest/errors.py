class HarvestError(Exception):
    """Base class for everything the harvest core raises on purpose."""


class ValidationError(HarvestError):
    """A precondition the user can fix (no target, nothing selected, ...).

    The operation is aborted, the session is left as it was.
    """


class LookupFailure(HarvestError):
    """A material or harvester that disappeared between selection and execution."""


class ExternalCapabilityFailure(HarvestError):
    """The roller, the store or the pile capability raised."""


class MalformedInput(HarvestError):
    """A payload that isn't what it claims to be (bad broadcast, not a creature)."""
