from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import pytest
import requests

from services.settings_store import SettingsStore


SAMPLE_CRITERIA = """# DMP Evaluation Guidance

Reviewers use the grid below for every plan.

Table 2: Evaluation criteria per project phase

| Proposal/Early Stage | Mid-project | End-project |
|---|---|---|
| 1a Describe the planned data collection methods | Report progress on data collection | Confirm all data was collected as planned |
| 1b List the expected data types and formats | Update the data types in use | Give the final inventory of data types |
| Estimate the expected data volumes | Report the actual data volumes | Report the final data volumes |

# Annex

Unrelated closing text.
"""

SAMPLE_DMP = (
    "Data Management Plan. This project collects survey responses and interview "
    "transcripts from participating institutions. Data are stored on the university "
    "research storage with nightly backups and deposited in a trusted repository at the "
    "end of the project under a CC BY licence with persistent identifiers. "
) * 2


class FakeResponse:
    """Minimal stand-in for :class:`requests.Response`."""

    def __init__(
        self,
        status_code: int = 200,
        payload: Any = None,
        *,
        chunks: Optional[Iterable[bytes]] = None,
        content_type: str = "application/json",
    ) -> None:
        self.status_code = status_code
        self._payload = payload
        self._chunks = list(chunks or [])
        self.headers = {"content-type": content_type}
        self.closed = False

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload

    def iter_content(self, chunk_size: Optional[int] = None) -> Iterable[bytes]:
        return iter(self._chunks)

    def close(self) -> None:
        self.closed = True


class FakeSession:
    """Replays queued responses (or raises queued exceptions) in order."""

    def __init__(self, responses: List[Any]) -> None:
        self._responses = list(responses)
        self.calls: List[Dict[str, Any]] = []

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append({"url": url, **kwargs})
        item = self._responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def completion(content: str) -> Dict[str, Any]:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def sse_event(delta: Dict[str, Any], finish_reason: Optional[str] = None) -> bytes:
    payload = {"choices": [{"delta": delta, "finish_reason": finish_reason}]}
    return f"data: {json.dumps(payload)}\n\n".encode("utf-8")


@pytest.fixture
def settings_store(tmp_path: Path) -> SettingsStore:
    return SettingsStore(tmp_path / "settings.json")


@pytest.fixture
def test_mode_store(settings_store: SettingsStore) -> SettingsStore:
    settings_store.set_test_mode(True)
    return settings_store


@pytest.fixture
def live_store(settings_store: SettingsStore) -> SettingsStore:
    settings_store.set_api_key("sk-test-123456789")
    settings_store.set_model("test/model")
    return settings_store


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def record_sleep(sleeps: List[float]):
    return sleeps.append


@pytest.fixture
def connection_error() -> requests.ConnectionError:
    return requests.ConnectionError("connection refused")
