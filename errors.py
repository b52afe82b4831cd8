"""Taxonomía de errores del motor de transferencias.

Cada error de negocio lleva su código HTTP; app.py los traduce a respuestas JSON
con un único exception handler.
"""


class PaymentError(Exception):
    """Base de todos los errores de dominio."""
    status_code = 400
    default_message = 'Payment error'

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(PaymentError):
    status_code = 422
    default_message = 'Invalid request'


class NotFound(PaymentError):
    status_code = 404
    default_message = 'Not Found'


class Unauthorized(PaymentError):
    status_code = 403
    default_message = 'Unauthorized'


class InvalidCredential(PaymentError):
    status_code = 400
    default_message = 'Invalid Pin'


class InvalidReceiver(PaymentError):
    status_code = 400
    default_message = 'Invalid receiver account'


class InsufficientFunds(PaymentError):
    status_code = 400
    default_message = 'Insufficient balance'


class CreditLimitExceeded(PaymentError):
    status_code = 422
    default_message = 'Credit limit exceeded. Unable to process payment.'


class AlreadyExists(PaymentError):
    status_code = 409
    default_message = 'Already exists'


class InternalError(PaymentError):
    """Falla inesperada; el mensaje nunca expone detalle interno."""
    status_code = 500
    default_message = 'Internal Server Error'

    def __init__(self, message: str | None = None):
        super().__init__(self.default_message)
