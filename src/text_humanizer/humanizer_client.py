from dataclasses import dataclass

import httpx

from text_humanizer.config import settings
from text_humanizer.schemas import HumanizationSettings

SERVICE_QUOTA_ERROR = "Insufficient credits"


class HumanizerError(RuntimeError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RequestRejected(HumanizerError):
    pass


class SubmitFailed(HumanizerError):
    pass


class PollFailed(HumanizerError):
    pass


class RederiveFailed(HumanizerError):
    pass


@dataclass(frozen=True)
class DocumentStatus:
    external_id: str
    output: str | None = None

    @property
    def done(self) -> bool:
        return isinstance(self.output, str) and len(self.output) > 0


def _json_body(r: httpx.Response) -> dict:
    try:
        data = r.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _error_text(r: httpx.Response, default: str) -> str:
    error = _json_body(r).get("error")
    return str(error) if error else default


class HumanizerClient:
    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout_sec: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = settings.humanizer_api_key if api_key is None else api_key
        self.base_url = (base_url or settings.humanizer_base_url).rstrip("/")
        self.timeout_sec = timeout_sec or settings.request_timeout_sec
        self._transport = transport

    def _headers(self) -> dict:
        if not self.api_key:
            raise HumanizerError("HUMANIZER_API_KEY is not set")
        return {
            "apikey": self.api_key,
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, body: dict | None = None) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout_sec, transport=self._transport) as client:
            return await client.request(method, f"{self.base_url}{path}", headers=self._headers(), json=body)

    async def submit(self, text: str, job_settings: HumanizationSettings) -> str:
        body = {"content": text, **job_settings.model_dump()}
        try:
            r = await self._request("POST", "/submit", body)
        except httpx.HTTPError as exc:
            raise SubmitFailed(f"submit_transport_error: {exc}") from exc

        message = _error_text(r, "Failed to submit document")
        if r.status_code == 400 and message == SERVICE_QUOTA_ERROR:
            raise RequestRejected("Humanization service quota exhausted", status_code=r.status_code)
        if not r.is_success:
            raise SubmitFailed(message, status_code=r.status_code)

        external_id = _json_body(r).get("id")
        if not external_id:
            raise SubmitFailed("submit_response_missing_id", status_code=r.status_code)
        return str(external_id)

    async def poll_status(self, external_id: str) -> DocumentStatus:
        try:
            r = await self._request("POST", "/document", {"id": external_id})
        except httpx.HTTPError as exc:
            raise PollFailed(f"poll_transport_error: {exc}") from exc

        if not r.is_success:
            raise PollFailed("Failed to retrieve document status", status_code=r.status_code)
        output = _json_body(r).get("output")
        return DocumentStatus(external_id=external_id, output=output if isinstance(output, str) else None)

    async def request_rederivation(self, external_id: str) -> str:
        try:
            r = await self._request("POST", "/rehumanize", {"id": external_id})
        except httpx.HTTPError as exc:
            raise RederiveFailed(f"rehumanize_transport_error: {exc}") from exc

        if not r.is_success:
            raise RederiveFailed("Failed to rehumanize document", status_code=r.status_code)

        new_id = _json_body(r).get("id")
        if not new_id:
            raise RederiveFailed("rehumanize_response_missing_id", status_code=r.status_code)
        return str(new_id)

    async def check_service_credits(self) -> dict:
        try:
            r = await self._request("GET", "/check-user-credits")
        except httpx.HTTPError as exc:
            raise HumanizerError(f"credits_transport_error: {exc}") from exc

        if not r.is_success:
            raise HumanizerError("Failed to check credits", status_code=r.status_code)
        return _json_body(r)
