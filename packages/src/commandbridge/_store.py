"""Item store port and REST adapter.

The store is reached through two deliberately separate protocols:

- :class:`PendingCommandSource`: used by the poll reconciler.  It can
  discover pending work and record the one terminal, data-driven
  failure (a device without an address).  It has **no** method for
  writing device-reported status.
- :class:`StatusWriter`: used by the status consumer, the only
  component allowed to apply ``processing`` / ``completed`` /
  ``failed`` outcomes reported by devices.

:class:`ItemStoreClient` implements both against a Directus-style
REST API::

    GET   {url}/items/{collection}?filter[status][_eq]=pending&…
    PATCH {url}/items/{collection}/{id}
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Protocol, Self, runtime_checkable

import aiohttp

from commandbridge._errors import ConfigurationError, StoreError
from commandbridge._models import Command, CommandId, CommandStatus, StatusUpdate
from commandbridge._settings import StoreSettings

logger = logging.getLogger(__name__)

_DEVICE_FIELDS = ("device_id.id", "device_id.device_mac", "device_id.device_name")
_COMMAND_FIELDS = ("id", "command_type", "status", "date_created")

# ---------------------------------------------------------------------------
# Ports
# ---------------------------------------------------------------------------


@runtime_checkable
class PendingCommandSource(Protocol):
    """Reconciler-facing view of the store."""

    async def fetch_pending(self, limit: int) -> list[Command]:
        """Oldest-first batch of ``pending`` commands with devices resolved."""
        ...

    async def mark_unresolved(self, command_id: CommandId, error_message: str) -> None:
        """Terminally fail a command whose device cannot be addressed."""
        ...


@runtime_checkable
class StatusWriter(Protocol):
    """Consumer-facing view of the store."""

    async def apply_status(self, command_id: CommandId, update: StatusUpdate) -> None:
        """Overwrite the device-driven fields of a command record."""
        ...


# ---------------------------------------------------------------------------
# REST adapter
# ---------------------------------------------------------------------------


class ItemStoreClient:
    """aiohttp client for the item store.

    Use as an async context manager, or call :meth:`start` /
    :meth:`close` explicitly::

        async with ItemStoreClient(settings.store) as store:
            pending = await store.fetch_pending(10)

    Raises:
        ConfigurationError: When ``settings.token`` is not set.
    """

    def __init__(
        self,
        settings: StoreSettings,
        *,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        if settings.token is None:
            msg = "STORE__TOKEN is not set"
            raise ConfigurationError(msg)
        self._settings = settings
        self._base_url = settings.url.rstrip("/")
        self._session = session
        self._owns_session = session is None

    async def start(self) -> None:
        """Open the HTTP session (no-op when one was injected)."""
        if self._session is not None:
            return
        token = self._settings.token.get_secret_value()  # type: ignore[union-attr]
        self._session = aiohttp.ClientSession(
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
            },
            timeout=aiohttp.ClientTimeout(total=self._settings.timeout),
        )

    async def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # -- PendingCommandSource ----------------------------------------------

    async def fetch_pending(self, limit: int) -> list[Command]:
        fields = (*_COMMAND_FIELDS, *_DEVICE_FIELDS, *self._settings.param_fields)
        body = await self._request(
            "GET",
            self._collection_path(),
            params={
                "filter[status][_eq]": str(CommandStatus.PENDING),
                "fields": ",".join(fields),
                "sort": "date_created",
                "limit": str(limit),
            },
        )
        records = body.get("data") if isinstance(body, Mapping) else None
        commands: list[Command] = []
        for record in records or []:
            try:
                commands.append(
                    Command.from_record(record, param_fields=self._settings.param_fields),
                )
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed command record: %r", record)
        return commands

    async def mark_unresolved(self, command_id: CommandId, error_message: str) -> None:
        await self._request(
            "PATCH",
            self._collection_path(command_id),
            json={"status": str(CommandStatus.FAILED), "error_message": error_message},
        )

    # -- StatusWriter -------------------------------------------------------

    async def apply_status(self, command_id: CommandId, update: StatusUpdate) -> None:
        await self._request(
            "PATCH",
            self._collection_path(command_id),
            json=update.to_record(),
        )

    # -- Internal -----------------------------------------------------------

    def _collection_path(self, item_id: CommandId | None = None) -> str:
        path = f"/items/{self._settings.collection}"
        if item_id is not None:
            path = f"{path}/{item_id}"
        return path

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, str] | None = None,
        json: Any = None,
    ) -> Any:
        if self._session is None:
            msg = "ItemStoreClient is not started"
            raise RuntimeError(msg)

        url = f"{self._base_url}{path}"
        try:
            async with self._session.request(
                method,
                url,
                params=params,
                json=json,
            ) as response:
                if response.status >= 400:  # noqa: PLR2004
                    detail = await _error_detail(response)
                    msg = f"{method} {path} failed with HTTP {response.status}"
                    if detail:
                        msg = f"{msg}: {detail}"
                    raise StoreError(msg, status=response.status, detail=detail)
                if response.status == 204:  # noqa: PLR2004
                    return None
                return await response.json(content_type=None)
        except aiohttp.ClientConnectorError as exc:
            msg = f"{method} {path} failed: store unreachable ({exc})"
            raise StoreError(msg, unreachable=True) from exc
        except (aiohttp.ClientError, TimeoutError, ValueError) as exc:
            msg = f"{method} {path} failed: {str(exc) or type(exc).__name__}"
            raise StoreError(msg) from exc


async def _error_detail(response: aiohttp.ClientResponse) -> str | None:
    """First message of a Directus ``{"errors": [{"message": …}]}`` body."""
    try:
        body = await response.json(content_type=None)
    except (aiohttp.ContentTypeError, ValueError):
        return None
    if not isinstance(body, Mapping):
        return None
    errors = body.get("errors")
    if isinstance(errors, list) and errors and isinstance(errors[0], Mapping):
        message = errors[0].get("message")
        return str(message) if message is not None else None
    return None
