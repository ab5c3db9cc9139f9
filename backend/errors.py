"""Domain errors raised by the registration core.

main.py turns these into JSON responses; ``status_code`` is the HTTP status
each one maps to. Scan outcomes are not errors and never appear here.
"""
from decimal import Decimal


class RegistrationError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class SelectionError(RegistrationError):
    """The participant's selection breaks a registration rule."""
    status_code = 422


class AmountMismatchError(RegistrationError):
    status_code = 422

    def __init__(self, declared: Decimal, computed: Decimal):
        super().__init__(
            f"Total amount paid (₹{declared:.2f}) does not match the sum of "
            f"selected items (₹{computed:.2f}). Please adjust the amount or selections."
        )
        self.declared = declared
        self.computed = computed


class CatalogConfigError(RegistrationError):
    """A combo definition that cannot be resolved consistently."""
    status_code = 422


class CapacityError(RegistrationError):
    status_code = 409


class NotFoundError(RegistrationError):
    status_code = 404


class InvalidTransitionError(RegistrationError):
    status_code = 409


class ProjectionDataLossError(RegistrationError):
    """Old registrations were deleted but the new set could not be written.

    The participant may now have no registrations at all, so this is reported
    separately from ordinary validation failures.
    """
    status_code = 500

    def __init__(self, user_id: str, cause: Exception):
        super().__init__(
            f"Registrations for user {user_id} were removed but the replacement "
            f"could not be saved. The participant currently has no registrations; "
            f"resubmit the edit."
        )
        self.user_id = user_id
        self.cause = cause
