"""
Exception taxonomy for the kiosk.

Hardware and model faults change how the runtime operates; ledger faults
never leave the recognition tick because the decided action is already
queued by then.
"""


class KioskError(RuntimeError):
    """Base class for kiosk failures."""


class CameraUnavailableError(KioskError):
    """Camera could not be opened or stopped delivering frames."""


class ModelLoadError(KioskError):
    """The descriptor extractor could not be prepared."""


class DescriptorExtractionError(KioskError):
    """A detected face did not yield a usable descriptor."""


class LedgerUnavailableError(KioskError):
    """Transport failure, timeout or server error talking to the ledger."""


class LedgerContractError(KioskError):
    """The ledger answered with a shape that is not a known result variant."""


class LedgerRejectedError(KioskError):
    """The ledger answered `success=false` for an action."""


class EnrollmentError(KioskError):
    """Enrollment workflow used out of order."""


class DeviceNotRegisteredError(KioskError):
    """No device credential and no matching registration on the ledger."""


class ActionNotAllowedError(KioskError):
    """A kiosk request does not fit the employee's current status."""
