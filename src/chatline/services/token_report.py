from __future__ import annotations

"""Size and token estimates reported alongside each proxy response.

Estimates use a fixed heuristic (about four UTF-8 bytes per token); they are
for comparing encodings, not a real tokenizer count. Nothing here influences
how a request is processed.
"""

import math
from typing import Any, Dict


def estimate_tokens(text: Any) -> Dict[str, int]:
    data = "" if text is None else str(text)
    size = len(data.encode("utf-8"))
    return {"bytes": size, "estimatedTokens": math.ceil(size / 4)}


def context_savings(json_est: Dict[str, int], compact_est: Dict[str, int]) -> Dict[str, float]:
    bytes_saved = json_est["bytes"] - compact_est["bytes"]
    tokens_saved = json_est["estimatedTokens"] - compact_est["estimatedTokens"]
    percent = (bytes_saved / json_est["bytes"]) * 100 if json_est["bytes"] > 0 else 0
    return {
        "bytesSaved": bytes_saved,
        "tokensSaved": tokens_saved,
        "percentSaved": round(percent, 2),
    }


def response_savings(compact_est: Dict[str, int], decoded_est: Dict[str, int]) -> Dict[str, float]:
    """How much larger the decoded JSON is than the compact text the model sent."""
    bytes_extra = decoded_est["bytes"] - compact_est["bytes"]
    tokens_extra = decoded_est["estimatedTokens"] - compact_est["estimatedTokens"]
    percent = (bytes_extra / decoded_est["bytes"]) * 100 if decoded_est["bytes"] > 0 else 0
    return {
        "bytesExtra": bytes_extra,
        "tokensExtra": tokens_extra,
        "percentCompact": round(percent, 2),
    }


def new_token_report() -> Dict[str, Any]:
    return {
        "context": {},
        "prompt": {"finalPromptBytes": None, "finalPromptEstimatedTokens": None},
    }
