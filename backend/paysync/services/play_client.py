"""Google Play Android Publisher client"""
import logging
from typing import Any, Dict, Optional

import google_auth_httplib2
import httplib2
from google.auth.exceptions import GoogleAuthError, RefreshError
from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from paysync.core.config import Settings
from paysync.core.exceptions import ProviderAuthError, ProviderUnavailableError

logger = logging.getLogger(__name__)

ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"

# Statuses that mean "no such purchase for this token", not an infrastructure problem
NOT_FOUND_STATUSES = (400, 404, 410)


class GooglePlayClient:
    """Wraps the discovery-built ``androidpublisher`` v3 service.

    ``service`` is injectable so tests can pass a mock with the same call
    chain (``service.purchases().subscriptionsv2().get(...).execute()``).
    """

    def __init__(self, service, default_package_name: str = ""):
        self._service = service
        self.default_package_name = default_package_name

    @classmethod
    def from_settings(cls, settings: Settings) -> "GooglePlayClient":
        credentials = service_account.Credentials.from_service_account_info(
            {
                "type": "service_account",
                "client_email": settings.GOOGLE_PLAY_SA_CLIENT_EMAIL,
                "private_key": settings.GOOGLE_PLAY_SA_PRIVATE_KEY,
                "token_uri": "https://oauth2.googleapis.com/token",
            },
            scopes=[ANDROID_PUBLISHER_SCOPE],
        )
        http = google_auth_httplib2.AuthorizedHttp(
            credentials,
            http=httplib2.Http(timeout=settings.GOOGLE_PLAY_TIMEOUT_SECONDS),
        )
        service = build("androidpublisher", "v3", http=http, cache_discovery=False)
        return cls(service, default_package_name=settings.GOOGLE_PLAY_PACKAGE_NAME)

    def _execute(self, request, what: str) -> Optional[Dict[str, Any]]:
        try:
            return request.execute()
        except HttpError as e:
            status = e.resp.status if e.resp is not None else None
            if status in (401, 403):
                raise ProviderAuthError(f"Play {what}: permission denied (HTTP {status})") from e
            if status in NOT_FOUND_STATUSES:
                logger.info(f"Play {what}: no purchase for token (HTTP {status})")
                return None
            raise ProviderUnavailableError(f"Play {what} failed (HTTP {status})") from e
        except RefreshError as e:
            raise ProviderAuthError(f"Play {what}: service account token refresh failed: {e}") from e
        except GoogleAuthError as e:
            raise ProviderAuthError(f"Play {what}: {e}") from e
        except (httplib2.HttpLib2Error, OSError) as e:
            raise ProviderUnavailableError(f"Play {what}: transport error: {e}") from e

    def get_subscription(self, package_name: str, purchase_token: str) -> Optional[Dict[str, Any]]:
        """purchases.subscriptionsv2.get; None when the token is not a known subscription"""
        request = self._service.purchases().subscriptionsv2().get(
            packageName=package_name,
            token=purchase_token,
        )
        return self._execute(request, "subscriptionsv2.get")

    def get_product_purchase(self, package_name: str, product_id: str,
                             purchase_token: str) -> Optional[Dict[str, Any]]:
        """purchases.products.get for one-time products"""
        request = self._service.purchases().products().get(
            packageName=package_name,
            productId=product_id,
            token=purchase_token,
        )
        return self._execute(request, "products.get")

    def acknowledge_subscription(self, package_name: str, subscription_id: str, purchase_token: str) -> None:
        """purchases.subscriptions.acknowledge (no-op on Google's side if already acknowledged)"""
        request = self._service.purchases().subscriptions().acknowledge(
            packageName=package_name,
            subscriptionId=subscription_id,
            token=purchase_token,
            body={},
        )
        self._execute(request, "subscriptions.acknowledge")
