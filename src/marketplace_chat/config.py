from __future__ import annotations

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    API_URL: str = "http://localhost:3000/api"
    REQUEST_TIMEOUT: float = 15.0

    SOCKET_URL: str = "http://localhost:3000"
    SOCKET_PATH: str = "socket.io"

    CONNECT_TIMEOUT: float = 10.0
    RECONNECT_ATTEMPTS: int = 5
    RECONNECT_DELAY: float = 2.0
    RECONNECT_GROWTH: float = 1.5
    RECONNECT_MAX_DELAY: float = 10.0
    HEARTBEAT_SECONDS: float = 25.0

    SEND_MAX_RETRIES: int = 3
    SEND_RETRY_DELAY: float = 1.0
    MESSAGE_MAX_LENGTH: int = 5000

    TYPING_TIMEOUT: float = 3.0

    AUTH_TOKEN: str = ""
    TOKEN_EXPIRATION_BUFFER: int = 300

    LOG_LEVEL: str = "INFO"

    model_config = ConfigDict(
        env_file=".env",
        env_prefix="CHAT_",
        extra="ignore",
    )


settings = Settings()
