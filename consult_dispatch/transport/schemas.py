# consult_dispatch/transport/schemas.py
from pydantic import BaseModel, ConfigDict, Field, field_validator


class DoctorRequestIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    language: str | None = Field(default=None, max_length=32)
    requester_id: str | None = Field(default=None, alias="requesterId", max_length=128)
    # Accepted for compatibility with older clients; sessions are generated server-side
    channel_name: str | None = Field(default=None, alias="channelName", max_length=128)


class DoctorRequestOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    request_id: str = Field(alias="requestId")
    session_id: str = Field(alias="sessionId")
    credential: str


class CallResponseIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    request_id: str | None = Field(default=None, alias="requestId", max_length=64)
    accepted: bool = False
    candidate_id: str | None = Field(default=None, alias="candidateId", max_length=128)

    @field_validator("accepted", mode="before")
    @classmethod
    def _parse_accepted(cls, value):
        # Mobile clients send the flag as the string "true" / "false"
        if value is None:
            return False
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.strip().lower() == "true"
        raise ValueError("accepted must be a boolean or \"true\"/\"false\"")


class CallResponseOut(BaseModel):
    success: bool = True
    status: str
