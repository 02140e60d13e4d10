"""Error kinds raised across the pipeline."""


class PalateError(Exception):
    pass


class PermissionDenied(PalateError):
    """Calendar or photo library access was refused."""


class TransientIOFailure(PalateError):
    """A single asset fetch or classifier batch failed."""


class ConfigurationMissing(PalateError, RuntimeError):
    """A setting the requested operation cannot run without is absent."""


class MalformedReferenceData(PalateError, ValueError):
    """A reference dataset record could not be parsed."""
