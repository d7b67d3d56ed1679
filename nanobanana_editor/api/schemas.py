import enum
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class AppState(str, enum.Enum):
    IDLE = "IDLE"
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


class HealthResponse(BaseModel):
    message: str = Field(..., description="Health status message")


class InlineImage(BaseModel):
    """An image payload sent inline to the model."""

    base64_data: str = Field(..., description="Base64 image data, optionally with a data URL header")
    mime_type: str = Field(..., description="Image content type, e.g. image/png")


class EditResponse(BaseModel):
    success: bool = Field(..., description="Whether the model returned an image")
    image: Optional[str] = Field(None, description="Edited image as a base64 data URL")
    error: Optional[str] = Field(None, description="Human-readable failure reason")


class EditorConfig(BaseModel):
    model: str = Field(..., description="Gemini model used for edits")
    default_instruction: str = Field(..., description="Instruction new sessions start with")
    accepted_content_types: str = Field("image/*", description="Content types accepted for upload")
    preview_max_side: int = Field(..., description="Longest side of generated previews in pixels")


class UploadedImageOut(BaseModel):
    id: str = Field(..., description="Image ID")
    filename: str = Field(..., description="Original file name")
    mime_type: str = Field(..., description="Content type")
    width: Optional[int] = Field(None, description="Width in pixels, when decodable")
    height: Optional[int] = Field(None, description="Height in pixels, when decodable")
    size_bytes: int = Field(..., description="Upload size")
    url: str = Field(..., description="URL of the uploaded bytes")
    preview_url: str = Field(..., description="URL of a downscaled preview")
    created_at: datetime = Field(..., description="Upload timestamp")


class ResultOut(BaseModel):
    mime_type: str = Field(..., description="Content type of the edited image")
    width: Optional[int] = Field(None, description="Width in pixels")
    height: Optional[int] = Field(None, description="Height in pixels")
    url: str = Field(..., description="URL to download the edited image")


class SessionState(BaseModel):
    id: str = Field(..., description="Session ID")
    instruction: str = Field(..., description="Current editing instruction")
    status: AppState = Field(..., description="Editor status")
    error_message: str = Field("", description="Last error or skipped-upload message; empty when none")
    images: List[UploadedImageOut] = Field(default_factory=list, description="Uploaded images in upload order")
    result: Optional[ResultOut] = Field(None, description="Edited image, once a generation succeeded")
    can_generate: bool = Field(..., description="True when images and a non-blank instruction are present and nothing is running")
    created_at: datetime = Field(..., description="Created timestamp")
    updated_at: datetime = Field(..., description="Updated timestamp")


class InstructionRequest(BaseModel):
    instruction: str = Field(..., max_length=8000, description="Free-text description of the desired edit")


class EditHistoryItem(BaseModel):
    id: str = Field(..., description="Edit history entry ID")
    session_id: str = Field(..., description="Session ID")
    operation: str = Field(..., description="Operation type: upload/remove/clear/instruction/generate")
    params: Dict[str, Any] = Field(default_factory=dict, description="Operation parameters")
    created_at: datetime = Field(..., description="Timestamp")
