from typing import Any

from pydantic import BaseModel, Field

from agentbridge.core.models import ApprovalBehavior, Attachment, PermissionMode


class CreateChatRequest(BaseModel):
    cwd: str = Field(min_length=1)
    name: str | None = None
    system_prompt: str | None = None
    # Resume an existing agent conversation instead of starting a new one
    session_id: str | None = None
    permission_mode: PermissionMode = PermissionMode.ASSISTED


class AttachmentBody(BaseModel):
    name: str = ""
    media_type: str
    data: str

    def to_attachment(self) -> Attachment:
        return Attachment(name=self.name, media_type=self.media_type, data=self.data)


class SendMessageRequest(BaseModel):
    content: str = ""
    attachments: list[AttachmentBody] = Field(default_factory=list)


class ApprovalRequestBody(BaseModel):
    request_id: str
    behavior: ApprovalBehavior
    updated_input: dict[str, Any] | None = None
    message: str | None = None


class AutoApproveRequest(BaseModel):
    enabled: bool
