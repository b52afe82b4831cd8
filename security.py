"""Funciones de seguridad: hashing de PIN/contraseñas, JWT y cifrado de campos.

Se utiliza bcrypt vía passlib para PINs y contraseñas, PyJWT para tokens y
Fernet (cryptography) para los campos sensibles guardados en reposo.
"""

import hashlib
import hmac
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Optional

import jwt
from cryptography.fernet import Fernet, InvalidToken
from passlib.context import CryptContext

from config import get_settings
from errors import InvalidCredential, ValidationError

logger = logging.getLogger(__name__)
settings = get_settings()
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=settings.pin_hash_rounds)

PIN_PATTERN = re.compile(r'^\d{4,6}$')


@dataclass(frozen=True)
class Caller:
    """Identidad verificada de quien invoca una operación."""
    user_id: int
    phone: str


# hash_password: Genera hash bcrypt de una contraseña en texto plano.
def hash_password(password: str) -> str:
    # Truncar password a 72 bytes para compatibilidad bcrypt
    password_bytes = password.encode('utf-8')[:72]
    return pwd_context.hash(password_bytes.decode('utf-8', errors='ignore'))

# verify_password: Verifica si la contraseña suministrada coincide con el hash.
def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    password_bytes = password.encode('utf-8')[:72]
    try:
        return pwd_context.verify(password_bytes.decode('utf-8', errors='ignore'), password_hash)
    except ValueError:
        return False

# validate_pin_format: Exige PIN de 4 a 6 dígitos antes de cualquier hashing.
def validate_pin_format(pin) -> str:
    pin = '' if pin is None else str(pin)
    if not PIN_PATTERN.match(pin):
        raise ValidationError('The pin code must be between 4 and 6 digits.')
    return pin

def hash_pin(pin) -> str:
    return pwd_context.hash(validate_pin_format(pin))

# verify_pin: Un hash ausente o ilegible nunca valida.
def verify_pin(pin: str, pin_hash: Optional[str]) -> bool:
    if not pin_hash:
        return False
    try:
        return pwd_context.verify(pin, pin_hash)
    except ValueError:
        logger.warning("Stored pin hash could not be identified")
        return False

# create_token: Crea un JWT con sujeto (id de usuario) y teléfono.
def create_token(user_id: int, phone: str):
    exp = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_exp_minutes)
    payload = {"sub": str(user_id), "phone": phone, "exp": exp}
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)

# decode_token: Decodifica el JWT y retorna payload o None si inválido/expirado.
def decode_token(token: str):
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError:
        return None

def verify_credential(token: str) -> Caller:
    """Traduce un token presentado en la identidad del llamador.

    Lanza InvalidCredential si el token es inválido, expiró o le faltan claims.
    """
    data = decode_token(token)
    if not data or 'sub' not in data:
        raise InvalidCredential('Invalid token')
    try:
        user_id = int(data['sub'])
    except (TypeError, ValueError):
        raise InvalidCredential('Invalid token')
    return Caller(user_id=user_id, phone=data.get('phone', ''))

# ----------------------- Cifrado de campos -----------------------

@lru_cache
def get_cipher() -> Fernet:
    key = settings.field_encryption_key
    if not key:
        logger.warning("FIELD_ENCRYPTION_KEY not set - generating a process-local key, encrypted data will not survive a restart")
        key = Fernet.generate_key().decode()
        settings.field_encryption_key = key
    return Fernet(key.encode() if isinstance(key, str) else key)

def encrypt_value(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return get_cipher().encrypt(str(value).encode('utf-8')).decode('ascii')

def decrypt_value(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    try:
        return get_cipher().decrypt(token.encode('ascii')).decode('utf-8')
    except InvalidToken:
        logger.error("Could not decrypt stored field with the configured key")
        raise

# fingerprint: HMAC determinístico para unicidad de valores cifrados.
def fingerprint(value: str) -> str:
    get_cipher()
    key = hashlib.sha256(b'fingerprint:' + settings.field_encryption_key.encode()).digest()
    return hmac.new(key, str(value).encode('utf-8'), hashlib.sha256).hexdigest()
