"""
services/notification/fcm.py
Firebase Cloud Messaging transport, guarded by a circuit breaker so a
degraded FCM backend fails fast instead of stalling reminder batches.
"""

import logging
import os
from typing import List, Optional, Tuple

import firebase_admin
from firebase_admin import credentials, messaging
from pybreaker import CircuitBreaker, CircuitBreakerError, CircuitBreakerListener

from config.settings import settings

logger = logging.getLogger(__name__)


class BreakerLogListener(CircuitBreakerListener):
    """Logs breaker state transitions."""

    def state_change(self, cb, old_state, new_state):
        logger.warning(
            f"Circuit breaker '{cb.name}' changed from "
            f"{getattr(old_state, 'name', old_state)} to {new_state.name}"
        )


fcm_breaker = CircuitBreaker(
    fail_max=settings.FCM_BREAKER_FAIL_MAX,
    reset_timeout=settings.FCM_BREAKER_RESET_SECONDS,
    # A dead device token says nothing about FCM's health
    exclude=[messaging.UnregisteredError],
    listeners=[BreakerLogListener()],
    name="fcm",
)


def is_configured() -> bool:
    """True when a Firebase app exists or can be created from the credentials file."""
    if firebase_admin._apps:
        return True
    path = settings.FIREBASE_CREDENTIALS_PATH
    if not path or not os.path.exists(path):
        return False
    firebase_admin.initialize_app(credentials.Certificate(path))
    logger.info("Firebase app initialized")
    return True


def send_push(token: str, title: str, body: str, data: Optional[dict] = None) -> str:
    """
    Send one push message synchronously. Returns the FCM message id.
    Raises messaging.UnregisteredError for a stale token and FirebaseError
    for any other delivery failure.
    """
    message = messaging.Message(
        notification=messaging.Notification(title=title, body=body),
        # FCM data payloads only carry strings
        data={k: str(v) for k, v in (data or {}).items()},
        token=token,
        android=messaging.AndroidConfig(
            priority="high",
            notification=messaging.AndroidNotification(sound="default"),
        ),
        apns=messaging.APNSConfig(
            payload=messaging.APNSPayload(aps=messaging.Aps(sound="default", badge=1))
        ),
    )
    return messaging.send(message)


def push_to_tokens(
    tokens: List[str], title: str, body: str, data: Optional[dict] = None
) -> Tuple[int, List[str], int]:
    """
    Push one message to each device token through the breaker.
    Returns (delivered, stale_tokens, failed). Stops at the first open-circuit
    error; unregistered tokens are returned for the caller to delete.
    """
    delivered, stale, failed = 0, [], 0
    for token in tokens:
        try:
            fcm_breaker.call(send_push, token, title, body, data)
            delivered += 1
        except messaging.UnregisteredError:
            stale.append(token)
        except CircuitBreakerError:
            logger.warning("FCM circuit open, skipping remaining devices")
            failed += 1
            break
        except Exception as e:
            logger.warning(f"FCM send failed: {e}")
            failed += 1
    return delivered, stale, failed
