"""
テスト共通ヘルパー
"""

from typing import Any, Iterable, Optional
from unittest.mock import MagicMock

import pytest

from call_pipeline.config import Config


def fake_response(
    status_code: int = 200,
    json_data: Any = None,
    reason: Optional[str] = None,
    chunks: Optional[Iterable[bytes]] = None,
    headers: Optional[dict] = None
) -> MagicMock:
    """requests.Response の代わりに使うモックを作成"""
    response = MagicMock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 400
    response.reason = reason or ("OK" if response.ok else "Error")
    response.json.return_value = json_data if json_data is not None else {}
    response.headers = headers or {}
    response.iter_content.return_value = list(chunks or [])
    return response


class FakeClock:
    """sleep() で進む時計"""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def make_config(**overrides) -> Config:
    values = dict(
        net2phone_client_id="client-id",
        net2phone_client_secret="client-secret",
        net2phone_base_url="https://api.net2phone.test",
        net2phone_token_endpoint="/oauth/token",
        net2phone_calls_endpoint="/v1/calls",
        recordings_base_url="https://recordings.test",
        assemblyai_api_key="assembly-key",
        assemblyai_base_url="https://assembly.test/v2",
        output_dir="output",
        page_size=500,
        min_duration=15,
        day_delay=0.0,
        download_batch_size=4,
        download_batch_delay=0.0,
        transcription_concurrency=3,
        poll_interval=0.01,
        transcription_timeout=5.0,
        progress_ttl=60.0,
        log_level="DEBUG",
    )
    values.update(overrides)
    return Config(**values)


@pytest.fixture
def test_config(tmp_path):
    """出力先を一時ディレクトリにしたテスト用設定"""
    return make_config(output_dir=str(tmp_path / "output"))
