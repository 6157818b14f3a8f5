"""Flex Query configurations and the shared token, kept in a secrets store.

Configurations are persisted as one JSON array under ``flex_query_configs``.
Every read-modify-write goes through a single ``AsyncLock``.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Protocol

from broker_reconcile.fetch.lock import AsyncLock
from broker_reconcile.utils.logging import error_message, get_logger

logger = get_logger(__name__)

SECRET_FLEX_TOKEN = "flex_token"
SECRET_FLEX_CONFIGS = "flex_query_configs"

_CAMEL_KEYS = {
    "id": "id",
    "name": "name",
    "query_id": "queryId",
    "account_group": "accountGroup",
    "auto_fetch_enabled": "autoFetchEnabled",
    "last_fetch_time": "lastFetchTime",
    "last_fetch_status": "lastFetchStatus",
    "last_fetch_error": "lastFetchError",
}


class SecretsStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...


class FetchStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    PENDING = "pending"


@dataclass(frozen=True)
class FlexQueryConfig:
    id: str
    name: str
    query_id: str
    account_group: str
    auto_fetch_enabled: bool = False
    last_fetch_time: str | None = None
    last_fetch_status: FetchStatus | None = None
    last_fetch_error: str | None = None

    @classmethod
    def from_dict(cls, payload: Any) -> FlexQueryConfig | None:
        if not isinstance(payload, dict):
            return None
        required = ("id", "name", "queryId", "accountGroup")
        if not all(isinstance(payload.get(key), str) for key in required):
            return None

        status_raw = payload.get("lastFetchStatus")
        try:
            status = FetchStatus(status_raw) if status_raw else None
        except ValueError:
            status = None
        last_time = payload.get("lastFetchTime")
        last_error = payload.get("lastFetchError")
        return cls(
            id=payload["id"],
            name=payload["name"],
            query_id=payload["queryId"],
            account_group=payload["accountGroup"],
            auto_fetch_enabled=bool(payload.get("autoFetchEnabled", False)),
            last_fetch_time=last_time if isinstance(last_time, str) else None,
            last_fetch_status=status,
            last_fetch_error=last_error if isinstance(last_error, str) else None,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        for attr, value in asdict(self).items():
            if value is None:
                continue
            if isinstance(value, Enum):
                value = value.value
            payload[_CAMEL_KEYS[attr]] = value
        return payload


@dataclass(frozen=True)
class LoadConfigsResult:
    success: bool
    configs: list[FlexQueryConfig] | None = field(default_factory=list)
    error: str | None = None


class FlexConfigStorage:
    def __init__(self, secrets: SecretsStore, lock: AsyncLock | None = None) -> None:
        self.secrets = secrets
        self.lock = lock or AsyncLock()

    async def load_configs_safe(self) -> LoadConfigsResult:
        """Distinguishes "no configs stored" from "the store could not be read"."""
        try:
            raw = await self.secrets.get(SECRET_FLEX_CONFIGS)
            if not raw:
                return LoadConfigsResult(success=True, configs=[])
            parsed = json.loads(raw)
        except Exception as exc:
            logger.error("Failed to load Flex Query configs: %s", error_message(exc))
            return LoadConfigsResult(success=False, configs=None, error=error_message(exc))

        if not isinstance(parsed, list):
            logger.error("Flex Query configs storage is not an array; treating as empty")
            return LoadConfigsResult(success=True, configs=[])

        configs: list[FlexQueryConfig] = []
        for entry in parsed:
            config = FlexQueryConfig.from_dict(entry)
            if config is None:
                logger.warning("Skipping invalid config entry: %r", entry)
                continue
            configs.append(config)
        return LoadConfigsResult(success=True, configs=configs)

    async def load_configs(self) -> list[FlexQueryConfig]:
        result = await self.load_configs_safe()
        return result.configs or []

    async def get_config(self, config_id: str) -> FlexQueryConfig | None:
        return next((c for c in await self.load_configs() if c.id == config_id), None)

    async def save_configs(self, configs: list[FlexQueryConfig]) -> None:
        await self.secrets.set(SECRET_FLEX_CONFIGS, json.dumps([c.to_dict() for c in configs]))

    async def add_config(
        self,
        name: str,
        query_id: str,
        account_group: str,
        auto_fetch_enabled: bool = False,
    ) -> FlexQueryConfig:
        async with self.lock:
            configs = await self.load_configs()
            config = FlexQueryConfig(
                id=str(uuid.uuid4()),
                name=name,
                query_id=query_id,
                account_group=account_group,
                auto_fetch_enabled=auto_fetch_enabled,
            )
            configs.append(config)
            await self.save_configs(configs)
            return config

    async def update_config(self, config_id: str, **changes: Any) -> FlexQueryConfig | None:
        changes.pop("id", None)
        async with self.lock:
            configs = await self.load_configs()
            for index, config in enumerate(configs):
                if config.id == config_id:
                    configs[index] = replace(config, **changes)
                    await self.save_configs(configs)
                    return configs[index]
            return None

    async def delete_config(self, config_id: str) -> bool:
        async with self.lock:
            configs = await self.load_configs()
            remaining = [c for c in configs if c.id != config_id]
            if len(remaining) == len(configs):
                return False
            await self.save_configs(remaining)
            return True

    async def update_config_status(
        self,
        config_id: str,
        *,
        last_fetch_time: str,
        last_fetch_status: FetchStatus,
        last_fetch_error: str | None = None,
    ) -> bool:
        async with self.lock:
            configs = await self.load_configs()
            for index, config in enumerate(configs):
                if config.id == config_id:
                    configs[index] = replace(
                        config,
                        last_fetch_time=last_fetch_time,
                        last_fetch_status=last_fetch_status,
                        last_fetch_error=last_fetch_error,
                    )
                    await self.save_configs(configs)
                    return True
            logger.warning("Cannot update status: config %s not found", config_id)
            return False

    async def load_token(self) -> str | None:
        return await self.secrets.get(SECRET_FLEX_TOKEN)

    async def save_token(self, token: str) -> None:
        await self.secrets.set(SECRET_FLEX_TOKEN, token.strip())

    async def delete_token(self) -> None:
        await self.secrets.delete(SECRET_FLEX_TOKEN)
