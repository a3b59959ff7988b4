"""Types for Keyfold"""

import os
from typing import Union, Optional, TypedDict

StrPath = Union[str, os.PathLike[str]]

class KeyRecord(TypedDict):
    """Cache entry for a discovered key"""
    absolute_path: str
    password: Optional[str]
    format: str

class Settings(TypedDict):
    """Persisted settings stored alongside the cached keys"""
    convert_ppk_automatically: bool
