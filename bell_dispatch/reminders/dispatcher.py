import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import firebase_admin
from firebase_admin import credentials, exceptions as firebase_exceptions, messaging  # type: ignore
from pywebpush import WebPushException, webpush

from .config import settings
from .schemas import DeliveryEndpoint, DeliveryResult

logger = logging.getLogger(__name__)


class DeliveryTransport(ABC):
    """Attempts delivery of one payload to one endpoint"""

    @abstractmethod
    def send(self, endpoint: DeliveryEndpoint, payload: Dict[str, Any]) -> DeliveryResult:
        ...


def _ensure_firebase_initialized() -> Optional[firebase_admin.App]:
    if firebase_admin._apps:
        return firebase_admin.get_app()

    proj = settings.FCM_PROJECT_ID
    cfg_val = settings.FCM_CREDENTIALS_JSON
    env_gac_json = os.getenv("GOOGLE_APPLICATION_CREDENTIALS_JSON")
    env_gac = os.getenv("GOOGLE_APPLICATION_CREDENTIALS")
    options = {"projectId": proj} if proj else None

    logger.info(
        "[FCM] Initializing Firebase | project_id=%s REMINDER_FCM_CREDENTIALS_JSON set=%s "
        "GOOGLE_APPLICATION_CREDENTIALS_JSON set=%s GOOGLE_APPLICATION_CREDENTIALS set=%s",
        proj, bool(cfg_val), bool(env_gac_json), bool(env_gac),
    )

    creds_json: Optional[str] = cfg_val or env_gac_json or env_gac

    try:
        if creds_json and creds_json.strip().startswith("{"):
            cred = credentials.Certificate(json.loads(creds_json))
            return firebase_admin.initialize_app(cred, options=options)
        if creds_json and os.path.exists(creds_json):
            return firebase_admin.initialize_app(credentials.Certificate(creds_json), options=options)
        if proj:
            return firebase_admin.initialize_app(options=options)
    except (ValueError, IOError) as e:
        logger.error("[FCM] Failed to initialize Firebase: %r", e)
        return None

    logger.warning("[FCM] No credentials provided - push delivery is disabled")
    return None


class FcmTransport(DeliveryTransport):
    """Delivers notification payloads through Firebase Cloud Messaging"""

    def __init__(self, app: Optional[firebase_admin.App] = None, ttl_seconds: Optional[int] = None):
        self.app = app
        self.ttl_seconds = settings.NOTIFICATION_TTL_SECONDS if ttl_seconds is None else ttl_seconds

    @classmethod
    def from_settings(cls) -> "FcmTransport":
        return cls(app=_ensure_firebase_initialized())

    def build_message(self, endpoint: DeliveryEndpoint, payload: Dict[str, Any]) -> messaging.Message:
        title = str(payload.get("title") or "")
        body = str(payload.get("body") or "")
        url = payload.get("url")
        data = {k: str(v) for k, v in payload.items() if v is not None}

        fcm_options = None
        # FCM rejects non-https links
        if isinstance(url, str) and url.startswith("https://"):
            fcm_options = messaging.WebpushFCMOptions(link=url)

        apns = None
        if endpoint.platform == "ios":
            apns = messaging.APNSConfig(
                headers={
                    "apns-push-type": "alert",
                    "apns-priority": "10",
                    "apns-expiration": str(self.ttl_seconds),
                }
            )

        return messaging.Message(
            token=endpoint.endpoint,
            notification=messaging.Notification(title=title, body=body),
            data=data,
            webpush=messaging.WebpushConfig(
                headers={"TTL": str(self.ttl_seconds)},
                fcm_options=fcm_options,
            ),
            apns=apns,
        )

    def send(self, endpoint: DeliveryEndpoint, payload: Dict[str, Any]) -> DeliveryResult:
        if self.app is None:
            return DeliveryResult.failed("firebase not initialized")

        try:
            message = self.build_message(endpoint, payload)
            result = messaging.send(message, app=self.app)
        except (messaging.UnregisteredError, messaging.SenderIdMismatchError) as e:
            logger.info("[FCM] Endpoint expired: %s", e)
            return DeliveryResult.expired(str(e))
        except firebase_exceptions.NotFoundError as e:
            logger.info("[FCM] Endpoint not found: %s", e)
            return DeliveryResult.expired(str(e))
        except (firebase_exceptions.FirebaseError, ValueError) as e:
            logger.warning("[FCM] Delivery failed: %r", e)
            return DeliveryResult.failed(repr(e))

        logger.debug("[FCM] Notification sent: %s", result)
        return DeliveryResult.delivered()


class WebPushTransport(DeliveryTransport):
    """Delivers notification payloads to Web Push subscriptions signed with VAPID"""

    def __init__(
        self,
        vapid_private_key: Optional[str],
        vapid_subject: str,
        ttl_seconds: Optional[int] = None,
    ):
        self.vapid_private_key = vapid_private_key
        self.vapid_subject = vapid_subject
        self.ttl_seconds = settings.NOTIFICATION_TTL_SECONDS if ttl_seconds is None else ttl_seconds

    @classmethod
    def from_settings(cls) -> "WebPushTransport":
        if not settings.VAPID_PRIVATE_KEY:
            logger.warning("[WebPush] No VAPID key configured - web push delivery is disabled")
        return cls(settings.VAPID_PRIVATE_KEY, settings.VAPID_SUBJECT)

    def send(self, endpoint: DeliveryEndpoint, payload: Dict[str, Any]) -> DeliveryResult:
        if not self.vapid_private_key:
            return DeliveryResult.failed("vapid key not configured")

        keys = endpoint.keys or {}
        if not keys.get("p256dh") or not keys.get("auth"):
            # Without encryption keys the subscription can never be delivered to
            logger.info("[WebPush] Subscription missing keys: %s", endpoint.endpoint)
            return DeliveryResult.expired("missing subscription keys")

        try:
            webpush(
                subscription_info={"endpoint": endpoint.endpoint, "keys": keys},
                data=json.dumps(payload),
                vapid_private_key=self.vapid_private_key,
                vapid_claims={"sub": self.vapid_subject},
                ttl=self.ttl_seconds,
                headers={"Urgency": "high"},
            )
        except WebPushException as e:
            status_code = getattr(e.response, "status_code", None)
            if status_code in (404, 410):
                logger.info("[WebPush] Subscription gone (%s): %s", status_code, endpoint.endpoint)
                return DeliveryResult.expired(str(status_code))
            logger.warning("[WebPush] Delivery failed (%s): %r", status_code, e)
            return DeliveryResult.failed(repr(e))

        logger.debug("[WebPush] Notification sent to %s", endpoint.endpoint)
        return DeliveryResult.delivered()


class PlatformTransport(DeliveryTransport):
    """Routes each endpoint to the transport registered for its platform"""

    def __init__(self, transports: Dict[str, DeliveryTransport], default: str = "web"):
        self.transports = transports
        self.default = default

    @classmethod
    def from_settings(cls) -> "PlatformTransport":
        fcm = FcmTransport.from_settings()
        return cls({"web": WebPushTransport.from_settings(), "android": fcm, "ios": fcm})

    def send(self, endpoint: DeliveryEndpoint, payload: Dict[str, Any]) -> DeliveryResult:
        transport = self.transports.get(endpoint.platform) or self.transports[self.default]
        return transport.send(endpoint, payload)
