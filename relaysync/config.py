"""
Configuration settings for relaysync.

Uses Pydantic Settings to resolve the store URI, the Postfix output directory,
the mail hostname and the tuning knobs of the synchronization pipeline.
Precedence: explicit kwargs > environment variables > `.env` > JSON5 config file
(path taken from `CONFIG`, default `config/config.json5`) > defaults.
"""
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Type

import json5
from pydantic import AliasChoices, Field
from pydantic.fields import FieldInfo
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from relaysync.domain.models import ConnectionDescriptor, SyncSnapshot
from relaysync.utils.logging import get_logger

log = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path("config") / "config.json5"

# Sections of the config file and the settings field each of their keys feeds.
NESTED_KEYS: Dict[str, Dict[str, str]] = {
    "db": {"uri": "db_uri"},
    "STDIO": {"postfixConfPath": "output_dir", "virtualPath": "virtual_path"},
    "postfix": {"hostname": "hostname"},
}


def _alias(env: str, name: str) -> AliasChoices:
    return AliasChoices(env, name)


def flatten_config(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Map the sectioned config layout onto settings field names.

    Keys outside the known sections pass through unchanged, so flat field
    names (or their environment aliases) work in the file as well.
    """
    flat: Dict[str, Any] = {}
    for key, value in data.items():
        section = NESTED_KEYS.get(key)
        if section is None or not isinstance(value, dict):
            flat[key] = value
            continue
        for option, option_value in value.items():
            if option in section and option_value is not None:
                flat[section[option]] = option_value
    return flat


class Json5ConfigSource(PydanticBaseSettingsSource):
    """JSON5 config file source that degrades to an empty mapping on bad input."""

    def __init__(self, settings_cls: Type[BaseSettings], config_file: Path) -> None:
        super().__init__(settings_cls)
        self.config_file = config_file
        self._data = self._read_file(config_file)

    def _read_file(self, file_path: Path) -> Dict[str, Any]:
        if not file_path.is_file():
            return {}
        try:
            data = json5.loads(file_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            log.warning(
                f"Ignoring unreadable config file {file_path}: {exc}",
                extra={"config_path": str(file_path)},
            )
            return {}
        if not isinstance(data, dict):
            log.warning(
                f"Ignoring config file {file_path}: top-level value is not an object",
                extra={"config_path": str(file_path)},
            )
            return {}
        return self._preferred_keys(flatten_config(data))

    def _preferred_keys(self, data: Dict[str, Any]) -> Dict[str, Any]:
        # Report values under the same key the environment source uses, so
        # source precedence decides between them.
        keyed: Dict[str, Any] = {}
        for key, value in data.items():
            field = self.settings_cls.model_fields.get(key)
            alias = field.validation_alias if field is not None else None
            if isinstance(alias, AliasChoices) and isinstance(alias.choices[0], str):
                key = alias.choices[0]
            keyed[key] = value
        return keyed

    def get_field_value(self, field: FieldInfo, field_name: str) -> Tuple[Any, str, bool]:
        return self._data.get(field_name), field_name, False

    def __call__(self) -> Dict[str, Any]:
        return dict(self._data)


class Settings(BaseSettings):
    # Store
    db_uri: Optional[str] = Field(None, validation_alias=_alias("DBURI", "db_uri"))
    db_pool_min_size: int = Field(1, ge=1, validation_alias=_alias("DB_POOL_MIN_SIZE", "db_pool_min_size"))
    db_pool_max_size: int = Field(4, ge=1, validation_alias=_alias("DB_POOL_MAX_SIZE", "db_pool_max_size"))
    db_connect_timeout: float = Field(
        10.0, gt=0, validation_alias=_alias("DB_CONNECT_TIMEOUT", "db_connect_timeout")
    )

    # Postfix output
    output_dir: Path = Field(Path("/etc/postfix"), validation_alias=_alias("POSTFIXCONFPATH", "output_dir"))
    hostname: str = Field("localhost", validation_alias=_alias("POSTHOSTNAME", "hostname"))
    main_cf_name: str = Field("main.cf", validation_alias=_alias("MAIN_CF_NAME", "main_cf_name"))
    domains_map_name: str = Field(
        "mysql_virtual_domains.cf", validation_alias=_alias("DOMAINS_MAP_NAME", "domains_map_name")
    )
    alias_map_name: str = Field(
        "mysql_virtual_alias_maps.cf", validation_alias=_alias("ALIAS_MAP_NAME", "alias_map_name")
    )
    prerendered_alias_name: str = Field(
        "virtual", validation_alias=_alias("PRERENDERED_ALIAS_NAME", "prerendered_alias_name")
    )
    virtual_path: Optional[Path] = Field(None, validation_alias=_alias("VIRTUALPATH", "virtual_path"))
    tls_cert_file: str = Field(
        "/etc/ssl/certs/ssl-cert-snakeoil.pem", validation_alias=_alias("TLS_CERT_FILE", "tls_cert_file")
    )
    tls_key_file: str = Field(
        "/etc/ssl/private/ssl-cert-snakeoil.key", validation_alias=_alias("TLS_KEY_FILE", "tls_key_file")
    )
    message_size_limit: int = Field(
        26_214_400, ge=0, validation_alias=_alias("MESSAGE_SIZE_LIMIT", "message_size_limit")
    )
    mailbox_size_limit: int = Field(
        0, ge=0, validation_alias=_alias("MAILBOX_SIZE_LIMIT", "mailbox_size_limit")
    )
    milters: Tuple[str, ...] = Field((), validation_alias=_alias("MILTERS", "milters"))

    # Pipeline
    prerender_aliases: bool = Field(False, validation_alias=_alias("PRERENDER_ALIASES", "prerender_aliases"))
    include_disabled: bool = Field(False, validation_alias=_alias("INCLUDE_DISABLED", "include_disabled"))
    page_size: int = Field(500, gt=0, validation_alias=_alias("PAGE_SIZE", "page_size"))
    write_high_water_mark: int = Field(
        16_384, gt=0, validation_alias=_alias("WRITE_HIGH_WATER_MARK", "write_high_water_mark")
    )

    # Application
    log_level: str = Field("INFO", validation_alias=_alias("LOG_LEVEL", "log_level"))
    json_logs: bool = Field(False, validation_alias=_alias("JSON_LOGS", "json_logs"))

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        config_path = Path(os.environ.get("CONFIG") or DEFAULT_CONFIG_PATH)
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            Json5ConfigSource(settings_cls, config_path),
            file_secret_settings,
        )

    def snapshot(
        self,
        prerender: Optional[bool] = None,
        include_disabled: Optional[bool] = None,
    ) -> SyncSnapshot:
        """
        Freeze the settings into a SyncSnapshot for one run.

        Raises
        ------
        ConfigurationError
            If the store URI is missing or malformed.
        """
        connection = ConnectionDescriptor.parse(self.db_uri)
        return SyncSnapshot(
            hostname=self.hostname,
            connection=connection,
            output_dir=self.output_dir,
            main_cf_name=self.main_cf_name,
            domains_map_name=self.domains_map_name,
            alias_map_name=self.alias_map_name,
            prerendered_alias_name=self.prerendered_alias_name,
            virtual_path=self.virtual_path,
            tls_cert_file=self.tls_cert_file,
            tls_key_file=self.tls_key_file,
            message_size_limit=self.message_size_limit,
            mailbox_size_limit=self.mailbox_size_limit,
            milters=self.milters,
            prerender_aliases=self.prerender_aliases if prerender is None else prerender,
            include_disabled=self.include_disabled if include_disabled is None else include_disabled,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Retrieve a cached instance of Settings to avoid repeated env parsing.
    """
    return Settings()


__all__ = ["Settings", "get_settings", "Json5ConfigSource", "flatten_config"]
