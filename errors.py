# errors.py


class BillingError(Exception):
    status_code = 500

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class ValidationError(BillingError):
    """Bad or missing input. The caller should not retry."""
    status_code = 400


class NotFoundError(BillingError):
    status_code = 404


class StorageError(BillingError):
    """The database failed. Whether to retry is up to the caller."""
    status_code = 500
