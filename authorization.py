"""Compuerta de autorización: propiedad de la fuente y verificación de PIN."""

import logging

from errors import InvalidCredential, Unauthorized
from security import Caller, validate_pin_format, verify_pin

logger = logging.getLogger(__name__)


# ensure_owner: La fuente debe pertenecer al llamador.
def ensure_owner(source, caller: Caller):
    if source.user_id != caller.user_id:
        logger.warning("User %s tried to use %s %s owned by another user", caller.user_id, source.source_kind, source.id)
        raise Unauthorized('Unauthorized')

def check_pin(source, pin) -> None:
    """Valida formato (4-6 dígitos) y compara contra el hash guardado.

    Una fuente sin PIN configurado nunca pasa: InvalidCredential, no excepción
    inesperada.
    """
    pin = validate_pin_format(pin)
    if not verify_pin(pin, source.pin_hash):
        raise InvalidCredential('Invalid Pin')

def authorize(source, caller: Caller, pin) -> None:
    ensure_owner(source, caller)
    check_pin(source, pin)
