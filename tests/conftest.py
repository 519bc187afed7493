import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

# Cheap password hashing for the suite; read when the auth module is imported
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")


@pytest.fixture(autouse=True)
def _fresh_state(monkeypatch):
    """Give each test its own stores, engine and proxy."""
    from src.chatline.infrastructure.credential_store import InMemoryCredentialStore, reset_credential_store
    from src.chatline.infrastructure.session_store import InMemorySessionStore, reset_session_store
    from src.chatline.security.rate_limit import reset_rate_limits
    from src.chatline.services.gemini_proxy import reset_generative_proxy
    from src.chatline.services.presence import reset_chat_engine

    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.setenv("CHATLINE_COMPACT_CODEC_MODULE", "chatline_tests_no_such_codec")
    reset_credential_store(InMemoryCredentialStore())
    reset_session_store(InMemorySessionStore())
    reset_chat_engine(None)
    reset_generative_proxy(None)
    reset_rate_limits()
    yield
    reset_chat_engine(None)
    reset_generative_proxy(None)
