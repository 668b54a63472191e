from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

import httpx

from utils.outbound_http import RetryPolicy, request_with_retry


MAX_ITEMS_PER_REQUEST = 200


class AgentClientError(RuntimeError):
    def __init__(self, status_code: int, code: str, message: str) -> None:
        super().__init__(f"HTTP {status_code} {code}: {message}")
        self.status_code = int(status_code)
        self.code = str(code)
        self.message = str(message)


def _error_from_response(resp: httpx.Response) -> AgentClientError:
    code, message = "UNKNOWN", resp.text[:200]
    try:
        err = resp.json().get("error")
        if isinstance(err, dict):
            code = str(err.get("status") or code)
            message = str(err.get("message") or message)
    except (ValueError, AttributeError):
        pass
    return AgentClientError(resp.status_code, code, message)


class AgentClient:
    """
    Client used by a home-server agent to link itself and push its library.

    `claim()` stores the returned API key on the client; `ingest()` splits large
    libraries into requests the server accepts and merges the per-item results.
    """

    def __init__(
        self,
        base_url: str,
        *,
        client: httpx.AsyncClient,
        api_key: Optional[str] = None,
        timeout_s: float = 30.0,
        retry: RetryPolicy | None = None,
    ) -> None:
        self.base_url = str(base_url or "").rstrip("/")
        self.api_key = api_key
        self.timeout_s = float(timeout_s)
        self._client = client
        self._retry = retry or RetryPolicy()

    async def _post(
        self,
        path: str,
        body: Dict[str, Any],
        *,
        headers: Optional[Dict[str, str]] = None,
        retry: RetryPolicy | None = None,
    ) -> httpx.Response:
        try:
            return await request_with_retry(
                client=self._client,
                method="POST",
                url=self.base_url + path,
                target_kind="medialink",
                timeout_s=self.timeout_s,
                retry=retry or self._retry,
                headers=headers,
                json_body=body,
            )
        except httpx.HTTPError as e:
            raise AgentClientError(0, "UNAVAILABLE", f"POST {path} failed: {e}") from e

    async def claim(
        self,
        claim_public_id: str,
        claim_secret: str,
        *,
        agent_name: Optional[str] = None,
        agent_version: Optional[str] = None,
    ) -> Dict[str, str]:
        body: Dict[str, Any] = {
            "claimPublicId": claim_public_id,
            "claimSecret": claim_secret,
        }
        if agent_name is not None:
            body["agentName"] = agent_name
        if agent_version is not None:
            body["agentVersion"] = agent_version
        # Claims are single use; never retry them blindly.
        resp = await self._post("/v1/agentClaim", body, retry=RetryPolicy(attempts=1))
        if resp.status_code != 200:
            raise _error_from_response(resp)
        out = resp.json()
        self.api_key = str(out["agentApiKey"])
        return {"agentApiKey": self.api_key, "serverId": str(out["serverId"])}

    async def ingest(self, items: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
        if not self.api_key:
            raise AgentClientError(401, "UNAUTHENTICATED", "Agent is not linked yet.")
        headers = {"Authorization": f"Bearer {self.api_key}"}
        results: List[Dict[str, Any]] = []
        chunks = [
            list(items[i : i + MAX_ITEMS_PER_REQUEST])
            for i in range(0, len(items), MAX_ITEMS_PER_REQUEST)
        ] or [[]]
        for chunk in chunks:
            resp = await self._post("/v1/agentIngest", {"items": chunk}, headers=headers)
            body: Any = None
            try:
                body = resp.json()
            except ValueError:
                pass
            per_item = body.get("results") if isinstance(body, dict) else None
            # A 400 carrying per-item results means every item in the chunk failed.
            if resp.status_code in (200, 207, 400) and isinstance(per_item, list):
                results.extend(per_item)
                continue
            raise _error_from_response(resp)
        upserted = sum(1 for r in results if r.get("status") == "upserted")
        return {
            "results": results,
            "upserted": upserted,
            "errors": len(results) - upserted,
        }
