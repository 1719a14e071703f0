# app/schemas/access_event.py
from pydantic import BaseModel, ConfigDict
from datetime import datetime
from typing import Optional


class WebhookEventData(BaseModel):
    """`data` block of a device push. Only eventId and eventType are mandatory."""
    model_config = ConfigDict(coerce_numbers_to_str=True, extra="allow")

    eventId: str
    eventType: str
    eventTime: Optional[str] = None
    personId: Optional[str] = None
    personName: Optional[str] = None
    doorId: Optional[str] = None
    doorIndexCode: Optional[str] = None
    doorName: Optional[str] = None
    deviceId: Optional[str] = None
    deviceName: Optional[str] = None
    cardNo: Optional[str] = None
    faceId: Optional[str] = None


class WebhookPayload(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True, extra="allow")

    msgId: Optional[str] = None
    topic: Optional[str] = None
    timestamp: Optional[str] = None
    data: WebhookEventData


class AccessEventOut(BaseModel):
    id: int
    event_id: str
    branch_id: str
    event_type: str
    raw_event_type: Optional[str]
    event_time: datetime
    person_id: Optional[str]
    person_name: Optional[str]
    door_id: Optional[str]
    door_name: Optional[str]
    device_id: Optional[str]
    device_name: Optional[str]
    card_no: Optional[str]
    processed: bool
    processed_at: Optional[datetime]
    anomaly: Optional[str]
    processing_attempts: int
    dead_lettered: bool
    created_at: datetime

    class Config:
        from_attributes = True


class SimulatedEventCreate(BaseModel):
    person_id: str
    event_type: str = "entry"    # entry | exit | denied
