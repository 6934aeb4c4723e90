"""Custom exceptions for ssh-lab."""


class LabError(RuntimeError):
    """Raised on unrecoverable configuration or provisioning errors."""


class ConfigError(LabError):
    """Invalid lab definition, environment value or substitution value."""


class TemplateError(LabError):
    """A role template could not be rendered completely."""


class DependencyMissing(LabError):
    """A required external tool is not installed."""


class TransferFailure(LabError):
    """The base image could not be downloaded or published."""


class MediaBuildFailure(LabError):
    """The cloud-init seed volume could not be authored."""


class DiskCreationFailure(LabError):
    """The copy-on-write overlay disk could not be created."""


class LaunchFailure(LabError):
    """The VM process could not be started."""


class MissingMediaTool(DependencyMissing, MediaBuildFailure):
    pass


class MissingDiskTool(DependencyMissing, DiskCreationFailure):
    pass


class MissingEngine(DependencyMissing, LaunchFailure):
    pass


class IntegrityFailure(TransferFailure):
    """The downloaded base image does not match the expected digest."""
