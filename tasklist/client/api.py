import logging
from typing import Callable, Optional

import httpx

from tasklist.core.config import Settings, get_settings
from tasklist.core.errors import AuthError, TransportError, ValidationError
from tasklist.models import TaskQuery, TaskResponse, TaskUpdate, require_title

logger = logging.getLogger(__name__)


class TaskAPI:
    """
    HTTP client for the /tasks endpoints.

    No caching and no retries: every call returns validated data or raises
    ValidationError / AuthError / TransportError.
    """

    def __init__(
        self,
        token_provider: Callable[[], Optional[str]],
        base_url: str | None = None,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.token_provider = token_provider
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.api_url,
            timeout=settings.api_timeout_seconds,
            transport=transport,
        )

    async def __aenter__(self) -> "TaskAPI":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        token = self.token_provider()
        if not token:
            raise AuthError("Not signed in")
        return {"Authorization": f"Bearer {token}"}

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        headers = self._headers()
        try:
            response = await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning(f"{method} {url} failed: {exc}")
            raise TransportError(f"Network error: {exc}") from exc

        if response.status_code < 400:
            return response

        message = _error_message(response)
        if response.status_code in (400, 422):
            raise ValidationError(message)
        if response.status_code in (401, 403):
            raise AuthError(message)
        logger.warning(f"{method} {url} returned {response.status_code}: {message}")
        raise TransportError(message, status_code=response.status_code)

    async def list_tasks(self, query: TaskQuery) -> list[TaskResponse]:
        response = await self._request("GET", "/tasks", params=query.params())
        return [TaskResponse.model_validate(item) for item in response.json()]

    async def create_task(self, title: str, description: str | None = None) -> TaskResponse:
        require_title(title)
        body = {"title": title}
        if description is not None:
            body["description"] = description
        response = await self._request("POST", "/tasks", json=body)
        return TaskResponse.model_validate(response.json())

    async def update_task(self, task_id, changes: TaskUpdate) -> TaskResponse:
        body = changes.model_dump(mode="json", exclude_unset=True)
        response = await self._request("PUT", f"/tasks/{task_id}", json=body)
        return TaskResponse.model_validate(response.json())

    async def delete_task(self, task_id) -> None:
        await self._request("DELETE", f"/tasks/{task_id}")


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return f"HTTP {response.status_code}: {response.text}"
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return f"HTTP {response.status_code}"
