"""
Models for observed container state.
"""
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class ContainerState(str, Enum):
    """
    Observed lifecycle state of the director container.
    """
    ABSENT = "absent"
    STOPPED = "stopped"
    RUNNING = "running"


class ContainerInfo(BaseModel):
    """
    Snapshot of a container attached to the director network.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    created: Optional[datetime] = None
    network: str = ""
