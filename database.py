"""Acceso a la base de datos del ledger.

Define el motor, la creación del esquema y el context manager de sesión que
usan el ledger, el log de transacciones y los servicios de cuentas.
"""

from sqlalchemy import event
from sqlmodel import SQLModel, create_engine, Session
from config import get_settings

settings = get_settings()
is_sqlite = settings.database_url.startswith('sqlite')

# SQLite necesita compartir conexiones entre hilos del servidor y esperar
# (timeout) a que se libere el lock de escritura en lugar de fallar.
connect_args = {'check_same_thread': False, 'timeout': 30} if is_sqlite else {}

engine = create_engine(settings.database_url, echo=False, connect_args=connect_args)

if is_sqlite:
    @event.listens_for(engine, 'connect')
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute('PRAGMA foreign_keys=ON')
        cursor.close()

# init_db: Registra los modelos y crea las tablas que falten.
def init_db():
    import models  # noqa: F401
    SQLModel.metadata.create_all(engine)

class DBSession:
    """Sesión de trabajo sobre el ledger.

    Los objetos siguen legibles tras el commit (expire_on_commit=False) para
    armar respuestas; si el bloque lanza, se hace rollback antes de cerrar.
    """
    def __enter__(self):
        self.session = Session(engine, expire_on_commit=False)
        return self.session

    def __exit__(self, exc_type, exc, tb):
        if exc:
            self.session.rollback()
        self.session.close()
