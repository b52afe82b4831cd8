"""Aplicación FastAPI principal: cuentas, líneas de crédito, pagos e historial.

Cada endpoint traduce el payload a referencias etiquetadas y delega en el
orquestador o en los servicios; los errores de dominio se convierten a JSON en
un único exception handler.
"""

import logging
from decimal import Decimal
from typing import Optional, Union

from fastapi import FastAPI, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from sqlmodel import select

import accounts
from config import get_settings
from database import init_db, DBSession
from errors import InvalidCredential, PaymentError
from models import User
from notification import NotificationService
from resolver import AccountRef, CreditLineRef, PhoneRef, UpiRef
from security import Caller, create_token, verify_credential, verify_password
from transaction import TransactionService
from transfer import TransferOrchestrator, TransferRequest

settings = get_settings()
logging.basicConfig(
    level=settings.log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="UPI Ledger API", version="0.1.0")
security = HTTPBearer()
orchestrator = TransferOrchestrator(notifier=NotificationService())

# ---------------------------- Schemas ----------------------------
class RegisterPayload(BaseModel):
    """Payload para registro de usuarios (entorno de desarrollo)."""
    phone: str
    name: Optional[str] = None
    password: str

class LoginPayload(BaseModel):
    """Payload para inicio de sesión y obtención de JWT."""
    phone: str
    password: str

class PayPayload(BaseModel):
    """Pago a cuenta: emisor por cuenta o Credit UPI; receptor por cuenta, UPI o teléfono."""
    amount: Decimal
    from_bank_account: Optional[int] = None
    credit_upi: Optional[str] = None
    to_bank_account: Optional[int] = None
    upi_id: Optional[str] = None
    mobile_no: Optional[str] = None
    description: Optional[str] = None
    pin_code: Union[str, int]

class PayCreditLinePayload(BaseModel):
    """Pago hacia una línea de crédito bancaria."""
    amount: Decimal
    from_bank_account: Optional[int] = None
    credit_upi: Optional[str] = None
    to_bank_credit_upi: Optional[int] = None
    description: Optional[str] = None
    pin_code: Union[str, int]

class BalancePayload(BaseModel):
    account_id: Optional[int] = None
    credit_upi: Optional[str] = None
    pin_code: Union[str, int]
    amount: Optional[Decimal] = None

class BankDetailsPayload(BaseModel):
    bank_id: int
    account_number: str
    account_type: str
    account_holder_name: Optional[str] = None
    aadhaar_number: Optional[str] = None
    pan_number: Optional[str] = None
    pin_code: Union[str, int]
    pin_code_confirmation: Union[str, int]

class ActivatePayload(BaseModel):
    bank_account: int

class CreditPinPayload(BaseModel):
    kind: str = 'bank'
    bank_credit_upi: int
    pin_code: Union[str, int]
    pin_code_confirmation: Union[str, int]

class FcmPayload(BaseModel):
    fcm_token: str

# sender_ref / receiver_ref: Normalizan los campos sueltos a una referencia etiquetada.
def sender_ref(from_bank_account: Optional[int], credit_upi: Optional[str]):
    if from_bank_account:
        return AccountRef(from_bank_account)
    if credit_upi:
        return UpiRef(credit_upi)
    return None

def receiver_ref(payload: PayPayload):
    if payload.mobile_no:
        return PhoneRef(payload.mobile_no)
    if payload.to_bank_account:
        return AccountRef(payload.to_bank_account)
    if payload.upi_id:
        return UpiRef(payload.upi_id)
    return None

# ----------------------- Auth Dependencies -----------------------

def get_current_caller(credentials: HTTPAuthorizationCredentials = Depends(security)) -> Caller:
    """Obtiene la identidad del llamador a partir del token JWT o lanza 401."""
    try:
        caller = verify_credential(credentials.credentials)
    except InvalidCredential:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    with DBSession() as s:
        if not s.get(User, caller.user_id):
            raise HTTPException(status_code=401, detail="User not found")
    return caller

# ------------------------- Error Handling ------------------------
@app.exception_handler(PaymentError)
def payment_error_handler(request: Request, exc: PaymentError):
    """Convierte errores de dominio en respuesta JSON con su código HTTP."""
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

# ------------------------- Startup Event -------------------------
@app.on_event("startup")
def on_startup():
    """Inicializa la base de datos."""
    init_db()

@app.on_event("shutdown")
def on_shutdown():
    orchestrator.notifier.shutdown()

# --------------------------- Auth Routes -------------------------
@app.post('/auth/register')
def register(payload: RegisterPayload):
    """Registra un usuario nuevo identificado por su teléfono."""
    user = accounts.create_user(payload.phone, payload.name, payload.password)
    return {"id": user.id, "phone": user.phone, "name": user.name}

@app.post('/auth/login')
def login(payload: LoginPayload):
    """Autentica usuario y devuelve token JWT para futuras peticiones."""
    with DBSession() as s:
        user = s.exec(select(User).where(User.phone == payload.phone)).first()
        if not user or not verify_password(payload.password, user.password_hash):
            raise HTTPException(status_code=401, detail="Invalid credentials")
        token = create_token(user.id, user.phone)
        return {"access_token": token, "token_type": "bearer"}

@app.post('/user/fcm')
def update_fcm(payload: FcmPayload, caller: Caller = Depends(get_current_caller)):
    accounts.update_fcm_token(caller, payload.fcm_token)
    return {"updated": True}

# --------------------------- Bank Routes -------------------------
@app.post('/bank/accounts')
def link_account(payload: BankDetailsPayload, caller: Caller = Depends(get_current_caller)):
    """Vincula una cuenta bancaria y genera su dirección UPI."""
    account = accounts.link_bank_account(
        caller, payload.bank_id, payload.account_number, payload.account_type,
        payload.pin_code, payload.pin_code_confirmation,
        account_holder_name=payload.account_holder_name,
        aadhaar_number=payload.aadhaar_number,
        pan_number=payload.pan_number,
    )
    return {"id": account.id, "upi_id": account.upi_id, "is_primary": account.is_primary}

@app.get('/bank/accounts')
def account_list(caller: Caller = Depends(get_current_caller)):
    return accounts.list_bank_accounts(caller)

@app.post('/bank/accounts/{account_id}/primary')
def make_primary(account_id: int, caller: Caller = Depends(get_current_caller)):
    account = accounts.set_primary_account(caller, account_id)
    return {"id": account.id, "is_primary": account.is_primary}

@app.post('/bank/balance')
def check_balance(payload: BalancePayload, caller: Caller = Depends(get_current_caller)):
    """Consulta saldo o crédito disponible tras verificar el PIN."""
    ref = sender_ref(payload.account_id, payload.credit_upi)
    return orchestrator.check_sufficiency(caller, ref, payload.pin_code, payload.amount)

# ------------------------ Credit UPI Routes ----------------------
@app.post('/credit-upi/bank/activate')
def activate_bank_line(payload: ActivatePayload, caller: Caller = Depends(get_current_caller)):
    line = accounts.activate_bank_credit_line(caller, payload.bank_account)
    return {"id": line.id, "upi_id": line.upi_id, "credit_limit": line.credit_limit,
            "available_credit": line.available_credit}

@app.post('/credit-upi/npci/activate')
def activate_network_line(caller: Caller = Depends(get_current_caller)):
    line = accounts.activate_network_credit_line(caller)
    return {"id": line.id, "upi_id": line.upi_id, "credit_limit": line.credit_limit,
            "available_credit": line.available_credit}

@app.post('/credit-upi/pin')
def save_pin(payload: CreditPinPayload, caller: Caller = Depends(get_current_caller)):
    accounts.set_credit_line_pin(caller, payload.kind, payload.bank_credit_upi,
                                 payload.pin_code, payload.pin_code_confirmation)
    return {"message": "Pin set Successful"}

@app.get('/credit-upi/lines')
def credit_lines(caller: Caller = Depends(get_current_caller)):
    return accounts.list_credit_lines(caller)

# ----------------------- Transaction Endpoints -------------------
@app.post('/pay')
def pay(payload: PayPayload, caller: Caller = Depends(get_current_caller)):
    """Transfiere a una cuenta por id, UPI o teléfono del receptor."""
    request = TransferRequest(
        amount=payload.amount,
        sender=sender_ref(payload.from_bank_account, payload.credit_upi),
        receiver=receiver_ref(payload),
        pin=str(payload.pin_code),
        description=payload.description,
    )
    return orchestrator.transfer_to_account(caller, request)

@app.post('/pay/credit-line')
def pay_credit_line(payload: PayCreditLinePayload, caller: Caller = Depends(get_current_caller)):
    """Paga hacia una línea de crédito bancaria."""
    request = TransferRequest(
        amount=payload.amount,
        sender=sender_ref(payload.from_bank_account, payload.credit_upi),
        receiver=CreditLineRef(payload.to_bank_credit_upi) if payload.to_bank_credit_upi else None,
        pin=str(payload.pin_code),
        description=payload.description,
    )
    return orchestrator.pay_to_credit_line(caller, request)

@app.get('/transactions')
def list_tx(status: Optional[str] = None, date_range: Optional[str] = None, amount_range: Optional[str] = None,
            payment_type: Optional[str] = None, page: int = 1, caller: Caller = Depends(get_current_caller)):
    """Historial del usuario con filtros y paginación de 20 por página."""
    return TransactionService.list_for_user(caller.user_id, status=status, date_range=date_range,
                                            amount_range=amount_range, payment_type=payment_type, page=page)

@app.get('/transactions/recipients')
def recent_recipients(caller: Caller = Depends(get_current_caller)):
    """Últimos 20 usuarios distintos a los que se envió dinero."""
    return TransactionService.recent_recipients(caller.user_id)

@app.get('/transactions/{tx_id}')
def get_tx(tx_id: str, caller: Caller = Depends(get_current_caller)):
    """Recupera detalle de una transacción específica por su transaction_id."""
    return TransactionService.get_for_user(tx_id, caller.user_id)

# -------------------------- Utility ------------------------------
@app.get('/health')
def health():
    """Verificación básica de salud y de configuración de notificaciones."""
    return {
        "status": "ok",
        "notifications_configured": bool(settings.notification_url)
    }
