"""Request, response and stream models for the knowledge relay."""

from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class ChatMessage(BaseModel):
    """A single message in a chat conversation."""

    role: str
    content: str


class ChatRequest(BaseModel):
    """Incoming chat request.

    Captcha fields are only read for the provider that is configured; the
    same values may instead arrive as request headers.
    """

    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("query", "Query"),
        description="User question",
    )
    history: List[ChatMessage] = Field(
        default_factory=list,
        validation_alias=AliasChoices("history", "History"),
        description="Prior turns; accepted but not sent to the model",
    )
    # Tencent / Aliyun ticket style
    captcha_ticket: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("captcha_ticket", "CaptchaTicket")
    )
    captcha_randstr: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("captcha_randstr", "CaptchaRandstr")
    )
    # Geetest v4
    lot_number: Optional[str] = None
    captcha_output: Optional[str] = None
    pass_token: Optional[str] = None
    gen_time: Optional[str] = None
    # reCAPTCHA / Turnstile token style
    recaptcha_token: Optional[str] = None
    recaptcha_action: Optional[str] = None
    cf_token: Optional[str] = None

    @field_validator("query")
    @classmethod
    def _query_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("query must not be blank")
        return value

    def captcha_fields(self) -> Dict[str, str]:
        """Return the non-empty captcha fields from the body."""
        names = (
            "captcha_ticket",
            "captcha_randstr",
            "lot_number",
            "captcha_output",
            "pass_token",
            "gen_time",
            "recaptcha_token",
            "recaptcha_action",
            "cf_token",
        )
        return {name: getattr(self, name) for name in names if getattr(self, name)}


class ChatResponse(BaseModel):
    """Blocking chat response envelope.

    ``answer`` is populated on success, ``message`` on failure.
    """

    success: bool
    answer: Optional[str] = None
    message: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class StreamContent(BaseModel):
    """One unit emitted to a streaming client.

    At most one of the two fields is non-empty.
    """

    content: str = ""
    reasoning_content: str = ""

    def is_empty(self) -> bool:
        return not self.content and not self.reasoning_content


class KnowledgeQuery(BaseModel):
    """Request body sent to the knowledge retrieval endpoint."""

    query: str
    top_k: int
