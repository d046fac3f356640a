from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator


class ConnectionInfo(BaseModel):
    # extra keys written by other tools (kernel_name, ...) are ignored
    model_config = ConfigDict(frozen=True, extra="ignore")

    transport: str = "tcp"  # or ipc
    ip: str = "127.0.0.1"
    shell_port: int = 0
    stdin_port: int = 0
    control_port: int = 0
    iopub_port: int = 0
    hb_port: int = 0
    key: bytes = b""
    signature_scheme: str = "hmac-sha256"
    kernel_name: Optional[str] = None

    @field_validator("key", mode="before")
    @classmethod
    def _key_to_bytes(cls, value):
        if value is None:
            return b""
        if isinstance(value, str):
            return value.encode()
        return value

    @field_validator("ip", mode="before")
    @classmethod
    def _wildcard_ip(cls, value):
        if value == "*":
            return "0.0.0.0"  # noqa
        return value
