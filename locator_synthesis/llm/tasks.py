from __future__ import annotations

from enum import Enum
from typing import Any, Union

RawModelOutput = Union[str, list[Any], dict[str, Any], None]


class GenerationTask(str, Enum):
    IDENTIFY_ELEMENTS = "identify-elements"
    REFINE_ELEMENTS = "refine-elements"
    MAP_STATE_ID = "map-state-id"
    GENERATE_XPATHS = "generate-xpaths"
    REPAIR_XPATHS = "repair-xpaths"
