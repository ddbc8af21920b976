"""
Verbindungs-Einstellungen aus Umgebungsvariablen bzw. .env (pydantic-settings).

    from db_query import Database
    Database.connect_from_settings()
"""
from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DBSettings(BaseSettings):
    host: str = Field("localhost", alias="DB_HOST")
    port: int = Field(5432, alias="DB_PORT")
    user: str = Field("postgres", alias="DB_USER")
    password: str = Field("postgres", alias="DB_PASSWORD")
    dbname: str = Field("dbobject", alias="DB_NAME")

    # Pool nur wenn pool_max > 1
    pool_min: int = Field(1, alias="DB_POOL_MIN")
    pool_max: int = Field(1, alias="DB_POOL_MAX")

    log_sql: bool = Field(False, alias="DB_LOG_SQL")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    def connect_params(self) -> Dict[str, Any]:
        """
        Keyword-Parameter für psycopg2.connect().
        """
        return {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "dbname": self.dbname,
        }


@lru_cache(maxsize=1)
def get_settings() -> DBSettings:
    return DBSettings()


__all__ = ["DBSettings", "get_settings"]
