from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional, Tuple

from fastapi.testclient import TestClient

COOKIE_NAME = "chat.sid"
DEFAULT_PASSWORD = "correct-horse-battery"


def signup_and_login(
    client: TestClient,
    username: str,
    *,
    fullname: Optional[str] = None,
    password: str = DEFAULT_PASSWORD,
) -> Tuple[str, Dict[str, Any]]:
    """Create an account, log in, and return the session cookie value and user payload."""
    res = client.post("/api/signup", json={"username": username, "password": password, "fullname": fullname})
    assert res.status_code == 201, res.text
    res = client.post("/api/login", json={"username": username, "password": password})
    assert res.status_code == 200, res.text
    cookie = res.cookies.get(COOKIE_NAME)
    assert cookie, "login did not set the session cookie"
    return cookie, res.json()["user"]


def cookie_header(cookie: str) -> Dict[str, str]:
    return {"cookie": f"{COOKIE_NAME}={cookie}"}


def wait_for(predicate: Callable[[], Any], timeout: float = 2.0, interval: float = 0.01) -> Any:
    """Poll until ``predicate`` returns something truthy (background tasks settle asynchronously)."""
    deadline = time.monotonic() + timeout
    while True:
        value = predicate()
        if value:
            return value
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        time.sleep(interval)
