from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_store(self) -> dict[str, object]:
        return self.model_dump(by_alias=True)


class UpstreamKey(_CamelModel):
    name: str
    value: str
    is_healthy: bool | None = Field(default=None, alias="isHealthy")

    @property
    def masked_value(self) -> str:
        if len(self.value) <= 12:
            return "*" * len(self.value)
        return f"{self.value[:8]}...{self.value[-4:]}"


class ClientToken(_CamelModel):
    name: str
    token: str
    enabled: bool = True
    created_at: str = Field(
        default_factory=lambda: datetime.now(UTC).isoformat(),
        alias="createdAt",
    )


class KeyStats(BaseModel):
    usage: int = 0
    errors: int = 0


class PasswordRequest(BaseModel):
    password: str = ""


class ChangePasswordRequest(_CamelModel):
    current_password: str = Field(default="", alias="currentPassword")
    new_password: str = Field(default="", alias="newPassword")


class AddKeyRequest(BaseModel):
    name: str = ""
    value: str = ""


class CreateTokenRequest(BaseModel):
    name: str = ""
    token: str | None = None


class UpdateTokenRequest(BaseModel):
    enabled: bool
