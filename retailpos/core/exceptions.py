"""
Error taxonomy for sale, customer and stock operations.

ValidationError    - request rejected before any write
SaleNotFoundError  - the sale being edited does not exist
ConflictError      - a uniqueness or staleness conflict that could not be recovered locally
StorageError       - the database failed underneath an operation
"""


class SaleError(Exception):
    """Base class for all errors raised by the sales engine"""
    default_message = 'Sale operation failed'
    # HTTP status the API answers with
    status_code = 500

    def __init__(self, message=None, **details):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def as_dict(self):
        data = {'error': type(self).__name__, 'message': self.message}
        if self.details:
            data['details'] = self.details
        return data


class ValidationError(SaleError):
    default_message = 'Invalid sale data'
    status_code = 400


class SaleNotFoundError(ValidationError):
    default_message = 'Sale not found'
    status_code = 404


class InsufficientStockError(ValidationError):
    """Requested quantities exceed the stock on hand.

    ``shortages`` maps product id -> {'requested': int, 'available': int}.
    """
    default_message = 'Insufficient stock'

    def __init__(self, shortages, message=None):
        self.shortages = shortages
        if message is None:
            parts = [
                f"product {pid}: requested {info['requested']}, available {info['available']}"
                for pid, info in sorted(shortages.items())
            ]
            message = 'Insufficient stock for ' + '; '.join(parts)
        super().__init__(message, shortages={str(k): v for k, v in shortages.items()})


class ConflictError(SaleError):
    default_message = 'Conflicting concurrent change'
    status_code = 409


class StorageError(SaleError):
    default_message = 'Storage failure'
    status_code = 503


class PartialSaleError(StorageError):
    """Some writes of a best-effort operation failed after others succeeded.

    ``failures`` is a list of dicts describing each failed step.
    """
    default_message = 'Sale was saved but some stock adjustments failed'
    status_code = 500

    def __init__(self, failures, sale_id=None, message=None):
        self.failures = failures
        self.sale_id = sale_id
        super().__init__(message, failures=failures, sale_id=sale_id)
