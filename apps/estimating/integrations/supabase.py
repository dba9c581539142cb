"""
Supabase gateway for the estimating service.

Reads verified measurements and pipeline metadata from row-secured tables
and invokes the hosted edge functions (pricing calculator, solar
measurements). Failures are logged and raised as RemoteCallError; nothing
here retries.
"""

import asyncio
import json
from typing import Optional, Dict, Any

from supabase import create_client, Client, ClientOptions

from ..core.settings import settings
from ..core.logging import get_logger

logger = get_logger(__name__)

MEASUREMENTS_TABLE = "measurements"
PIPELINE_TABLE = "pipeline_entries"


class RemoteCallError(Exception):
    """A call to the backend-as-a-service failed."""

    def __init__(self, message: str, operation: str = ""):
        super().__init__(message)
        self.message = message
        self.operation = operation


class SupabaseGateway:
    """Thin wrapper over the Supabase client used by estimating."""

    def __init__(self, client: Optional[Client] = None):
        self._client = client
        self._lock = asyncio.Lock()

    async def get_client(self) -> Client:
        if self._client is not None:
            return self._client

        async with self._lock:
            if self._client is not None:
                return self._client

            if not (settings.SUPABASE_URL and settings.supabase_key):
                raise RemoteCallError("Supabase is not configured", "connect")

            try:
                options = ClientOptions(
                    schema="public",
                    headers={"x-client-info": f"estimating/{settings.APP_VERSION}"},
                    postgrest_client_timeout=settings.REMOTE_TIMEOUT_SECONDS,
                    function_client_timeout=settings.REMOTE_TIMEOUT_SECONDS,
                )
                self._client = create_client(settings.SUPABASE_URL, settings.supabase_key, options)
                logger.info("Supabase client initialized", url=settings.SUPABASE_URL)
            except Exception as e:
                logger.error("Failed to initialize Supabase client", error=str(e))
                raise RemoteCallError(f"Could not connect to Supabase: {e}", "connect") from e

        return self._client

    async def fetch_active_measurement(self, property_id: str) -> Optional[Dict[str, Any]]:
        """Most recent active verified measurement for a property, if any."""
        client = await self.get_client()
        try:
            response = (
                client.table(MEASUREMENTS_TABLE)
                .select("*")
                .eq("property_id", property_id)
                .eq("is_active", True)
                .order("created_at", desc=True)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.error("Measurement lookup failed", property_id=property_id, error=str(e))
            raise RemoteCallError(f"Measurement lookup failed: {e}", "fetch_measurement") from e

        rows = response.data or []
        return rows[0] if rows else None

    async def fetch_pipeline_entry(self, pipeline_entry_id: str) -> Optional[Dict[str, Any]]:
        """Pipeline entry row (id, metadata, customer fields)."""
        client = await self.get_client()
        try:
            response = (
                client.table(PIPELINE_TABLE)
                .select("*")
                .eq("id", pipeline_entry_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.error("Pipeline lookup failed", pipeline_entry_id=pipeline_entry_id, error=str(e))
            raise RemoteCallError(f"Pipeline lookup failed: {e}", "fetch_pipeline_entry") from e

        rows = response.data or []
        return rows[0] if rows else None

    async def invoke_function(self, name: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """Invoke an edge function and return its decoded JSON payload."""
        client = await self.get_client()
        logger.info("Invoking edge function", function=name)
        try:
            raw = client.functions.invoke(name, invoke_options={"body": body, "responseType": "json"})
        except Exception as e:
            logger.error("Edge function call failed", function=name, error=str(e))
            raise RemoteCallError(f"{name} failed: {e}", name) from e

        if isinstance(raw, (bytes, str)):
            try:
                raw = json.loads(raw)
            except ValueError as e:
                raise RemoteCallError(f"{name} returned invalid JSON", name) from e

        if not isinstance(raw, dict):
            raise RemoteCallError(f"{name} returned an unexpected payload", name)
        if raw.get("error"):
            logger.error("Edge function returned error", function=name, error=raw.get("error"))
            raise RemoteCallError(str(raw["error"]), name)
        return raw


# Global gateway instance
_gateway: Optional[SupabaseGateway] = None


def get_gateway() -> SupabaseGateway:
    """FastAPI dependency returning the shared gateway."""
    global _gateway
    if _gateway is None:
        _gateway = SupabaseGateway()
    return _gateway
