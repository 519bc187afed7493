from __future__ import annotations

"""Optional TOON codec used to compact prompt context.

The codec library is loaded once, at application startup. When it cannot be
imported the proxy simply works with JSON.
"""

import importlib
import logging
import os
from types import ModuleType
from typing import Any, Optional, Protocol

from ..domain.errors import EncodingError

logger = logging.getLogger(__name__)

DEFAULT_CODEC_MODULE = "toon_format"


class CompactCodec(Protocol):
    name: str

    def encode(self, data: Any) -> str: ...

    def decode(self, text: str) -> Any: ...

    @property
    def can_decode(self) -> bool: ...


class ModuleCodec:
    """Adapts a module exposing ``encode``/``decode`` functions."""

    name = "TOON"

    def __init__(self, module: ModuleType) -> None:
        self._encode = getattr(module, "encode")
        self._decode = getattr(module, "decode", None)
        self.module_name = module.__name__

    def encode(self, data: Any) -> str:
        try:
            return str(self._encode(data))
        except Exception as exc:
            raise EncodingError(f"{self.module_name} encode failed: {exc}") from exc

    def decode(self, text: str) -> Any:
        if self._decode is None:
            raise NotImplementedError(f"{self.module_name} has no decode()")
        try:
            return self._decode(text)
        except Exception as exc:
            raise EncodingError(f"{self.module_name} decode failed: {exc}") from exc

    @property
    def can_decode(self) -> bool:
        return callable(self._decode)


def load_compact_codec(module_name: Optional[str] = None) -> Optional[CompactCodec]:
    name = module_name or os.getenv("CHATLINE_COMPACT_CODEC_MODULE", DEFAULT_CODEC_MODULE)
    try:
        module = importlib.import_module(name)
    except ImportError as exc:
        logger.warning("compact_codec_unavailable", extra={"codec_module": name, "err": str(exc)})
        return None
    if not callable(getattr(module, "encode", None)):
        logger.warning("compact_codec_missing_encode", extra={"codec_module": name})
        return None
    logger.info("compact_codec_loaded", extra={"codec_module": name})
    return ModuleCodec(module)
