import json
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any
from urllib import error, parse, request

from graph_notifications.core.errors import UpstreamError


class GraphApiError(UpstreamError):
    pass


def format_graph_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def parse_graph_datetime(raw_value: Any) -> datetime | None:
    if isinstance(raw_value, datetime):
        return raw_value if raw_value.tzinfo else raw_value.replace(tzinfo=UTC)
    if not isinstance(raw_value, str) or not raw_value.strip():
        return None
    cleaned = raw_value.strip().replace("Z", "+00:00")
    # Graph emits seven fractional digits; fromisoformat accepts at most six.
    if "." in cleaned:
        head, _, tail = cleaned.partition(".")
        digits = ""
        offset = ""
        for index, char in enumerate(tail):
            if not char.isdigit():
                offset = tail[index:]
                break
            digits += char
        cleaned = f"{head}.{digits[:6]}{offset}" if digits else f"{head}{offset}"
    try:
        parsed = datetime.fromisoformat(cleaned)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class GraphApiClient:
    def __init__(
        self,
        *,
        access_token: str = "",
        token_provider: Callable[[], str] | None = None,
        timeout_seconds: float = 10.0,
        api_base_url: str = "https://graph.microsoft.com/v1.0",
    ) -> None:
        self.access_token = self._normalize_access_token(access_token)
        self.token_provider = token_provider
        self.timeout_seconds = timeout_seconds
        self.api_base_url = api_base_url.rstrip("/")

    def create_subscription(
        self,
        *,
        change_type: str,
        notification_url: str,
        resource: str,
        expiration_at: datetime,
        client_state: str,
    ) -> dict[str, Any]:
        payload = {
            "changeType": change_type,
            "notificationUrl": notification_url,
            "resource": resource,
            "expirationDateTime": format_graph_datetime(expiration_at),
            "clientState": client_state,
        }
        response_payload = self._request_json("POST", "/subscriptions", payload=payload)
        subscription_id = response_payload.get("id")
        if not isinstance(subscription_id, str) or not subscription_id.strip():
            raise GraphApiError("Graph create subscription response missing id.", transient=False)
        return response_payload

    def list_subscriptions(self) -> list[dict[str, Any]]:
        return self._collect_pages("/subscriptions")

    def get_subscription(self, subscription_id: str) -> dict[str, Any]:
        return self._request_json("GET", f"/subscriptions/{self._quote(subscription_id)}")

    def renew_subscription(self, subscription_id: str, expiration_at: datetime) -> dict[str, Any]:
        return self._request_json(
            "PATCH",
            f"/subscriptions/{self._quote(subscription_id)}",
            payload={"expirationDateTime": format_graph_datetime(expiration_at)},
        )

    def delete_subscription(self, subscription_id: str) -> None:
        self._request("DELETE", f"/subscriptions/{self._quote(subscription_id)}")

    def get_call_record(self, call_record_id: str) -> dict[str, Any]:
        return self._request_json(
            "GET",
            f"/communications/callRecords/{self._quote(call_record_id)}",
        )

    def get_event(self, event_id: str, *, user_id: str | None = None) -> dict[str, Any]:
        return self._request_json(
            "GET",
            f"{self._user_root(user_id)}/events/{self._quote(event_id)}",
            query={"$select": "id,subject,onlineMeeting,isOnlineMeeting,type,organizer"},
        )

    def get_online_meeting(self, online_meeting_id: str, *, user_id: str | None = None) -> dict[str, Any]:
        return self._request_json(
            "GET",
            f"{self._user_root(user_id)}/onlineMeetings/{self._quote(online_meeting_id)}",
        )

    def find_online_meeting_by_join_url(
        self,
        join_web_url: str,
        *,
        user_id: str | None = None,
    ) -> dict[str, Any] | None:
        escaped_url = join_web_url.replace("'", "''")
        response_payload = self._request_json(
            "GET",
            f"{self._user_root(user_id)}/onlineMeetings",
            query={"$filter": f"JoinWebUrl eq '{escaped_url}'"},
        )
        items = response_payload.get("value")
        if not isinstance(items, list):
            return None
        for item in items:
            if isinstance(item, dict) and isinstance(item.get("id"), str):
                return item
        return None

    def list_meeting_transcripts(
        self,
        online_meeting_id: str,
        *,
        user_id: str | None = None,
    ) -> list[dict[str, Any]]:
        return self._collect_pages(
            f"{self._user_root(user_id)}/onlineMeetings/{self._quote(online_meeting_id)}/transcripts",
        )

    def get_transcript_content(
        self,
        online_meeting_id: str,
        transcript_id: str,
        *,
        user_id: str | None = None,
    ) -> str:
        raw_body = self._request(
            "GET",
            (
                f"{self._user_root(user_id)}/onlineMeetings/{self._quote(online_meeting_id)}"
                f"/transcripts/{self._quote(transcript_id)}/content"
            ),
            query={"$format": "text/vtt"},
            accept="text/vtt",
        )
        return raw_body.decode("utf-8-sig", errors="replace")

    def _collect_pages(self, path: str) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        response_payload = self._request_json("GET", path)
        while True:
            page_items = response_payload.get("value")
            if isinstance(page_items, list):
                items.extend(item for item in page_items if isinstance(item, dict))
            next_link = response_payload.get("@odata.nextLink")
            if not isinstance(next_link, str) or not next_link.startswith(self.api_base_url):
                return items
            response_payload = self._request_json("GET", next_link[len(self.api_base_url) :])

    def _user_root(self, user_id: str | None) -> str:
        cleaned = (user_id or "").strip()
        if not cleaned:
            return "/me"
        return f"/users/{self._quote(cleaned)}"

    def _quote(self, value: str) -> str:
        return parse.quote(value.strip(), safe="")

    def _request_json(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
        *,
        query: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        response_body = self._request(method, path, payload=payload, query=query)
        if not response_body.strip():
            return {}
        try:
            parsed_body = json.loads(response_body.decode("utf-8"))
        except json.JSONDecodeError as exc:
            raise GraphApiError("Graph API returned invalid JSON.") from exc
        if not isinstance(parsed_body, dict):
            raise GraphApiError("Graph API response is not a JSON object.")
        return parsed_body

    def _request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
        *,
        query: dict[str, str] | None = None,
        accept: str = "application/json",
        allow_token_retry: bool = True,
    ) -> bytes:
        access_token = self._resolve_access_token()
        target = f"{self.api_base_url}{path}"
        if query:
            separator = "&" if "?" in target else "?"
            target = f"{target}{separator}{parse.urlencode(query, quote_via=parse.quote)}"
        raw_payload: bytes | None = None
        if payload is not None:
            raw_payload = json.dumps(payload).encode("utf-8")

        req = request.Request(
            target,
            data=raw_payload,
            method=method,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
                "Accept": accept,
            },
        )
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                return response.read()
        except TimeoutError as exc:
            raise GraphApiError("Graph API request timed out.") from exc
        except error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="ignore")
            if exc.code == 401 and allow_token_retry and self.token_provider is not None:
                self.access_token = ""
                return self._request(
                    method,
                    path,
                    payload=payload,
                    query=query,
                    accept=accept,
                    allow_token_retry=False,
                )
            raise GraphApiError(
                f"Graph API HTTP {exc.code}: {body or 'empty response body'}",
                status_code=exc.code,
            ) from exc
        except error.URLError as exc:
            raise GraphApiError(f"Graph API connection error: {exc.reason}") from exc

    def _resolve_access_token(self) -> str:
        if not self.access_token and self.token_provider is not None:
            self.access_token = self._normalize_access_token(self.token_provider())
        if not self.access_token:
            raise GraphApiError(
                "GRAPH_ACCESS_TOKEN is missing and no token provider is configured.",
                transient=False,
            )
        return self.access_token

    def _normalize_access_token(self, raw_token: str) -> str:
        normalized = (raw_token or "").strip().strip('"').strip("'")
        if normalized.lower().startswith("bearer "):
            normalized = normalized.split(" ", maxsplit=1)[1].strip()
        return normalized
