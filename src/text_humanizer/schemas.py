from typing import Literal

from pydantic import BaseModel, Field

Readability = Literal["High School", "University", "Doctorate", "Journalist", "Marketing"]
Purpose = Literal[
    "General Writing",
    "Essay",
    "Article",
    "Marketing Material",
    "Story",
    "Cover Letter",
    "Report",
    "Business Material",
    "Legal Material",
]
Strength = Literal["Quality", "Balanced", "More Human"]
ModelVersion = Literal["v2", "v11"]

DEFAULT_TITLE = "Untitled Document"


class HumanizationSettings(BaseModel):
    readability: Readability = "High School"
    purpose: Purpose = "General Writing"
    strength: Strength = "Balanced"
    model: ModelVersion = "v11"


class HumanizeRequest(BaseModel):
    user_id: str
    text: str
    title: str | None = None
    document_id: str | None = None
    settings: HumanizationSettings = Field(default_factory=HumanizationSettings)


class DocumentCreateRequest(BaseModel):
    user_id: str
    original_text: str
    title: str | None = None
    humanized_text: str | None = None
    settings: HumanizationSettings = Field(default_factory=HumanizationSettings)


class DocumentUpdateRequest(BaseModel):
    title: str | None = None
    original_text: str | None = None
    humanized_text: str | None = None
    settings: HumanizationSettings | None = None


class JobResponse(BaseModel):
    external_id: str | None = None
    status: str
    attempts: int = 0
    credits_charged: int = 0


class DocumentResponse(BaseModel):
    id: str
    user_id: str
    title: str
    original_text: str
    humanized_text: str | None = None
    character_count: int = 0
    ud_document_id: str | None = None
    humanization_settings: HumanizationSettings
    created_at: str
    updated_at: str


class CreditBalanceResponse(BaseModel):
    user_id: str
    credits_remaining: int
    plan_type: str


class AdminGrantRequest(BaseModel):
    user_id: str
    credits: int
    note: str = "manual grant"
    plan_type: str | None = None
