"""
Convex client for interacting with the Convex database from Python.

This client provides async methods to call Convex queries and mutations
via the Convex HTTP API. Every Convex mutation runs as one transaction,
which is what the lifecycle stores rely on for conditional writes.
"""

from typing import Any, Dict, Optional

import httpx

from ..config import settings


class ConvexError(Exception):
    """Base exception for Convex errors."""
    pass


class ConvexAuthError(ConvexError):
    """Authentication error when calling Convex."""
    pass


class ConvexQueryError(ConvexError):
    """Error executing a Convex query."""
    pass


class ConvexMutationError(ConvexError):
    """Error executing a Convex mutation."""
    pass


class ConvexClient:
    """
    Async client for interacting with Convex from Python.

    Example usage:
        client = ConvexClient(
            deployment_url="https://your-deployment.convex.cloud",
            deploy_key="prod:your-deploy-key"
        )

        record = await client.query("userOperations:getByHash", {"chainId": 1, "userOpHash": "0x..."})
        inserted = await client.mutation("userOperations:insertIfAbsent", {"doc": {...}})
    """

    def __init__(
        self,
        deployment_url: Optional[str] = None,
        deploy_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.deployment_url = deployment_url or settings.convex_url
        self.deploy_key = deploy_key or settings.convex_deploy_key
        self.timeout = timeout or settings.convex_timeout_seconds

        if not self.deployment_url:
            raise ConvexError("CONVEX_URL is required")

        # Remove trailing slash if present
        self.deployment_url = self.deployment_url.rstrip("/")

        self._client: Optional[httpx.AsyncClient] = None

    @property
    def headers(self) -> Dict[str, str]:
        """Get headers for Convex API requests."""
        headers = {"Content-Type": "application/json"}
        if self.deploy_key:
            headers["Authorization"] = f"Convex {self.deploy_key}"
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the async HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers=self.headers,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _post(
        self,
        kind: str,
        function_name: str,
        args: Optional[Dict[str, Any]],
        error_cls: type,
    ) -> Any:
        client = await self._get_client()

        try:
            response = await client.post(
                f"{self.deployment_url}/api/{kind}",
                json={
                    "path": function_name,
                    "args": args or {},
                    "format": "json",
                },
            )

            if response.status_code == 401:
                raise ConvexAuthError("Invalid or missing deploy key")

            response.raise_for_status()
            try:
                data = response.json()
            except ValueError as e:
                raise error_cls(f"Invalid JSON response: {response.text[:200]}") from e

            if not isinstance(data, dict):
                raise error_cls(f"Unexpected response body: {data!r}")

            if data.get("status") == "error" or "error" in data:
                raise error_cls(data.get("errorMessage") or data.get("error"))

            return data.get("value")

        except httpx.HTTPStatusError as e:
            raise error_cls(f"{kind.capitalize()} failed: {e.response.text}") from e
        except httpx.RequestError as e:
            raise error_cls(f"Request failed: {str(e)}") from e

    async def query(
        self,
        function_name: str,
        args: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Execute a Convex query function.

        Args:
            function_name: The query function path (e.g., "userOperations:getByHash")
            args: Arguments to pass to the query function

        Returns:
            The query result

        Raises:
            ConvexQueryError: If the query fails
        """
        return await self._post("query", function_name, args, ConvexQueryError)

    async def mutation(
        self,
        function_name: str,
        args: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Execute a Convex mutation function.

        Raises:
            ConvexMutationError: If the mutation fails
        """
        return await self._post("mutation", function_name, args, ConvexMutationError)
