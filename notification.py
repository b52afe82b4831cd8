"""Cliente de notificaciones push (mejor esfuerzo).

notify nunca lanza: cualquier falla se registra en el log y devuelve False.
dispatch lo ejecuta en un pool de hilos para no bloquear la respuesta.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional

import requests

from config import get_settings
from database import DBSession
from models import User

logger = logging.getLogger(__name__)
settings = get_settings()


class NotificationService:
    """Envía notificaciones al token FCM del usuario vía un gateway HTTP."""
    def __init__(self, url: Optional[str] = None, timeout: Optional[float] = None, workers: Optional[int] = None):
        self.url = (url if url is not None else settings.notification_url).rstrip('/')
        self.timeout = timeout if timeout is not None else settings.request_timeout
        self.executor = ThreadPoolExecutor(max_workers=workers or settings.notification_workers,
                                           thread_name_prefix='notify')

    # notify: Devuelve True solo si el gateway aceptó el mensaje.
    def notify(self, user_id: int, title: str, message: str, data: Optional[dict] = None) -> bool:
        try:
            if not self.url:
                logger.debug("Notification gateway not configured, skipping user %s", user_id)
                return False
            with DBSession() as s:
                user = s.get(User, user_id)
                token = user.fcm_token if user else None
            if not token:
                return False
            payload_data = {'click_action': 'FLUTTER_NOTIFICATION_CLICK'}
            payload_data.update({k: str(v) for k, v in (data or {}).items()})
            resp = requests.post(self.url, json={
                'token': token,
                'notification': {'title': title, 'body': message},
                'data': payload_data,
            }, timeout=self.timeout)
            if resp.status_code >= 400:
                logger.error("Notification sending failed for user %s: HTTP %s", user_id, resp.status_code)
                return False
            return True
        except Exception as e:
            logger.error("Notification sending failed: %s", e)
            return False

    def dispatch(self, user_id: int, title: str, message: str, data: Optional[dict] = None) -> Optional[Future]:
        try:
            return self.executor.submit(self.notify, user_id, title, message, data)
        except RuntimeError as e:
            # pool cerrado durante el apagado
            logger.error("Notification not dispatched: %s", e)
            return None

    def shutdown(self):
        self.executor.shutdown(wait=False)
