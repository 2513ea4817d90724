from typing import Any, List, Optional, Union

from pydantic import AliasChoices, BaseModel, Field


class WhatsAppText(BaseModel):
    body: Optional[str] = None


class WhatsAppMessage(BaseModel):
    id: Optional[str] = None
    sender: Optional[str] = Field(default=None, validation_alias=AliasChoices("from", "sender"))
    timestamp: Optional[Union[int, str]] = None
    type: Optional[str] = "text"
    text: Optional[WhatsAppText] = None


class WhatsAppProfile(BaseModel):
    name: Optional[str] = None


class WhatsAppContact(BaseModel):
    wa_id: Optional[str] = None
    profile: Optional[WhatsAppProfile] = None


class WhatsAppValue(BaseModel):
    messaging_product: Optional[str] = None
    messages: List[WhatsAppMessage] = Field(default_factory=list)
    contacts: List[WhatsAppContact] = Field(default_factory=list)
    statuses: Optional[List[Any]] = None


class WhatsAppChange(BaseModel):
    field: Optional[str] = None
    value: Optional[WhatsAppValue] = None


class WhatsAppEntry(BaseModel):
    id: Optional[str] = None
    changes: List[WhatsAppChange] = Field(default_factory=list)
    value: Optional[WhatsAppValue] = None

    def values(self) -> List[WhatsAppValue]:
        """Both envelope shapes: ``changes[].value`` and a bare ``value``."""
        found = [change.value for change in self.changes if change.value is not None]
        if self.value is not None:
            found.append(self.value)
        return found


class WhatsAppWebhook(BaseModel):
    object: str
    entry: List[WhatsAppEntry] = Field(default_factory=list)


class WebhookResponse(BaseModel):
    success: bool
    message: str
