from __future__ import annotations

from typing import Any

import httpx

from stackpulse.config import settings


class PortainerApiError(RuntimeError):
    def __init__(self, *, message: str, status_code: int = 502) -> None:
        super().__init__(message)
        self.status_code = status_code


class PortainerApiClient:
    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self._base_url = (base_url or settings.portainer_base_url).rstrip("/")
        self._api_key = api_key or settings.PORTAINER_API_KEY
        self._timeout = timeout if timeout is not None else settings.PORTAINER_REQUEST_TIMEOUT_SECONDS

    async def list_stacks(self) -> list[dict[str, Any]]:
        body = await self._request("GET", "/stacks")
        if not isinstance(body, list):
            raise PortainerApiError(message="Portainer stack list response must be a JSON array")
        return [item for item in body if isinstance(item, dict)]

    async def get_stack(self, *, stack_id: str) -> dict[str, Any]:
        body = await self._request("GET", f"/stacks/{stack_id}")
        if not isinstance(body, dict):
            raise PortainerApiError(message=f"Portainer returned no definition for stack {stack_id}")
        return body

    async def get_stack_file(self, *, stack_id: str) -> str:
        body = await self._request("GET", f"/stacks/{stack_id}/file")
        content = body.get("StackFileContent") if isinstance(body, dict) else None
        if not isinstance(content, str):
            raise PortainerApiError(message=f"Stack file response for stack {stack_id} is missing StackFileContent")
        return content

    async def get_image_status(self, *, stack_id: str) -> str:
        body = await self._request(
            "GET",
            f"/stacks/{stack_id}/images_status",
            params={"refresh": "true"},
        )
        status = body.get("Status") if isinstance(body, dict) else None
        if not isinstance(status, str):
            raise PortainerApiError(message=f"Image status response for stack {stack_id} is missing Status")
        return status

    async def pull_image(self, *, endpoint_id: int, image: str) -> None:
        from_image, tag = split_image_reference(image)
        params = {"fromImage": from_image}
        if tag:
            params["tag"] = tag
        await self._request(
            "POST",
            f"/endpoints/{endpoint_id}/docker/images/create",
            params=params,
        )

    async def redeploy_git_stack(
        self,
        *,
        stack_id: str,
        endpoint_id: int,
        env: list[dict[str, Any]],
        reference_name: str | None = None,
    ) -> dict[str, Any] | None:
        payload: dict[str, Any] = {
            "Env": env,
            "Prune": False,
            "PullImage": True,
        }
        if reference_name:
            payload["RepositoryReferenceName"] = reference_name
        return await self._request(
            "PUT",
            f"/stacks/{stack_id}/git/redeploy",
            params={"endpointId": endpoint_id},
            payload=payload,
        )

    async def update_stack(
        self,
        *,
        stack_id: str,
        endpoint_id: int,
        stack_file_content: str,
        env: list[dict[str, Any]],
    ) -> dict[str, Any] | None:
        payload = {
            "StackFileContent": stack_file_content,
            "Env": env,
            "Prune": False,
            "PullImage": True,
        }
        return await self._request(
            "PUT",
            f"/stacks/{stack_id}",
            params={"endpointId": endpoint_id},
            payload=payload,
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> Any:
        url = f"{self._base_url}/api{path}"
        headers = {"X-API-Key": self._api_key}
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.request(method, url, params=params, json=payload, headers=headers)
        except httpx.RequestError as exc:
            raise PortainerApiError(message=f"Network error while calling Portainer: {exc}") from exc

        if response.status_code >= 400:
            raise PortainerApiError(
                message=f"Portainer API call failed ({response.status_code}): {response.text}",
                status_code=502,
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            # Image pulls stream newline-delimited progress JSON rather than one document.
            if path.endswith("/images/create"):
                return None
            raise PortainerApiError(message="Portainer API returned invalid JSON") from exc


def split_image_reference(image: str) -> tuple[str, str | None]:
    """Split ``registry:5000/repo:tag`` into ``("registry:5000/repo", "tag")``.

    Digest references are passed through whole since the pull endpoint accepts them as-is.
    """
    reference = image.strip()
    if "@" in reference:
        return reference, None
    name, sep, tag = reference.rpartition(":")
    if not sep or "/" in tag:
        return reference, None
    return name, tag
