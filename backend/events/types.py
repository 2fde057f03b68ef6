"""Event type definitions for sandbox progress and session output.

Every event is published on a topic, which is the id of the sandbox it
concerns. UI consumers subscribe per sandbox (see ``api/websocket.py``).
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    """All event types in the forgebox system.

    Events are categorized by:
    - Provisioning: Progress lines and streamed script output
    - Lifecycle: Sandbox state changes
    - Dev server / code-server: Session output and start/stop notices
    - Bus: Topic shutdown sentinel
    """

    # Provisioning
    PROVISION_LOG = "provision_log"
    PROVISION_OUTPUT = "provision_output"

    # Lifecycle
    STATE_CHANGED = "state_changed"

    # Dev server
    DEV_SERVER_OUTPUT = "dev_server_output"
    DEV_SERVER_STOPPED = "dev_server_stopped"

    # Code-server
    CODE_SERVER_OUTPUT = "code_server_output"
    CODE_SERVER_STARTED = "code_server_started"
    CODE_SERVER_STOPPED = "code_server_stopped"

    # Bus
    TOPIC_CLOSED = "topic_closed"


class SandboxEvent(BaseModel):
    """An event published on the bus.

    Payload schemas by event type:

    PROVISION_LOG:
        - message: str - Human-readable progress line (e.g. "Creating network...")
        - step: Optional[int] - Provisioning step number

    PROVISION_OUTPUT:
        - output: str - Decoded chunk of bootstrap/startup script output

    STATE_CHANGED:
        - state: str - The new sandbox state
        - error_message: Optional[str] - Failure message when state is "error"

    DEV_SERVER_OUTPUT / CODE_SERVER_OUTPUT:
        - output: str - Decoded output chunk

    DEV_SERVER_STOPPED / CODE_SERVER_STOPPED:
        - reason: str - Why the session ended

    CODE_SERVER_STARTED:
        - port: int - Host port the editor is reachable on
    """

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    topic: str
    data: dict[str, Any] = Field(default_factory=dict)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "type": "provision_log",
                    "timestamp": 1699876543.123,
                    "topic": "3f1c2e9a8b7d4c6e9f0a1b2c3d4e5f60",
                    "data": {"message": "Creating network...", "step": 4},
                }
            ]
        }
    }
