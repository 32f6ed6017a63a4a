import asyncio
import httpx

from typing import Dict, Iterable, Optional
from errors.errors import DispatchFailed
from models.models import TokenOutcome
from configuration.config import logger, FCM_PROJECT_ID, FCM_ACCESS_TOKEN, FCM_URL_TEMPLATE

INVALID_TOKEN_ERROR_CODES = {"UNREGISTERED"}


def _error_details(body) -> tuple:
    """Extracts (status, errorCode, message) from an FCM v1 error body."""
    if not isinstance(body, dict):
        return None, None, ""
    error = body.get("error") or {}
    error_code = None
    for detail in error.get("details") or []:
        if isinstance(detail, dict) and detail.get("errorCode"):
            error_code = detail["errorCode"]
            break
    return error.get("status"), error_code, str(error.get("message") or "")


def classify_fcm_response(status_code: int, body) -> TokenOutcome:
    """
    Classifies one FCM HTTP v1 response into a per-token outcome.

    Unregistered tokens and tokens rejected as malformed are `invalid_token`;
    quota, server and auth errors are `transient_failure`.
    """
    if 200 <= status_code < 300:
        return TokenOutcome.SUCCESS
    status, error_code, message = _error_details(body)
    if error_code in INVALID_TOKEN_ERROR_CODES or status_code == 404:
        return TokenOutcome.INVALID_TOKEN
    if (error_code == "INVALID_ARGUMENT" or status == "INVALID_ARGUMENT") and "registration token" in message.lower():
        return TokenOutcome.INVALID_TOKEN
    return TokenOutcome.TRANSIENT_FAILURE


class FcmPushClient:
    """Firebase Cloud Messaging HTTP v1 client. Sends one request per token and never retries."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        project_id: str = FCM_PROJECT_ID,
        access_token: str = FCM_ACCESS_TOKEN,
        url_template: str = FCM_URL_TEMPLATE,
    ):
        self.http_client = http_client
        self.project_id = project_id
        self.access_token = access_token
        self.url_template = url_template

    @property
    def url(self) -> str:
        return self.url_template.format(project_id=self.project_id)

    def build_message(self, token: str, notification: Dict[str, str], data: Optional[Dict[str, str]] = None) -> dict:
        return {
            "message": {
                "token": token,
                "notification": {"title": notification["title"], "body": notification["body"]},
                "data": {key: str(value) for key, value in (data or {}).items()},
                "android": {"priority": "high"},
                "webpush": {"headers": {"Urgency": "high"}},
            }
        }

    async def send_to_token(self, token: str, notification: Dict[str, str], data: Optional[Dict[str, str]] = None) -> TokenOutcome:
        if not self.project_id or not self.access_token:
            raise DispatchFailed("Push provider is not configured.")
        try:
            response = await self.http_client.post(
                self.url,
                json=self.build_message(token, notification, data),
                headers={"Authorization": f"Bearer {self.access_token}"},
            )
        except httpx.HTTPError as e:
            logger.error(f"Transport error sending push to token {token[:12]}...: {e!r}")
            return TokenOutcome.TRANSIENT_FAILURE

        try:
            body = response.json()
        except ValueError:
            body = None
        outcome = classify_fcm_response(response.status_code, body)
        if outcome != TokenOutcome.SUCCESS:
            logger.warning(f"Push to token {token[:12]}... failed with status {response.status_code}: {outcome.value}")
        return outcome

    async def send_to_tokens(self, tokens: Iterable[str], notification: Dict[str, str], data: Optional[Dict[str, str]] = None) -> Dict[str, TokenOutcome]:
        tokens = list(tokens)
        outcomes = await asyncio.gather(*(self.send_to_token(token, notification, data) for token in tokens))
        return dict(zip(tokens, outcomes))
