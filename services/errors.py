# services/errors.py


class RetailOpsError(Exception):
    """Base class for errors raised by the sync and fulfillment services."""


class ExternalServiceError(RetailOpsError):
    """An ERP, storefront, rider, messaging or geocoding call failed."""

    def __init__(self, service: str, message: str, status_code: int = None):
        self.service = service
        self.status_code = status_code
        super().__init__(f"{service}: {message}")


class DataIntegrityError(RetailOpsError):
    pass


class OrderNotFoundError(DataIntegrityError):
    pass


class SplitNotFoundError(DataIntegrityError):
    def __init__(self, message: str = "Split data missing"):
        super().__init__(message)


class StoreNotFoundError(DataIntegrityError):
    pass


class LineItemNotFoundError(DataIntegrityError):
    pass


class NoInventoryError(RetailOpsError):
    """No store has enough primary stock for a reassignment."""

    def __init__(self, field: str = None, message: str = "No inventory in stores"):
        self.field = field
        super().__init__(message)


class ReassignmentError(RetailOpsError):
    pass


class BackupWarehouseError(RetailOpsError):
    pass


class IllegalTransitionError(RetailOpsError):
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Transition {current} -> {target} is not allowed")


class SyncInProgressError(RetailOpsError):
    pass


class SyncSequenceError(RetailOpsError):
    pass
