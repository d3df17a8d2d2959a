"""
録音マネージャーモジュール (Recording Manager Module)

録音の利用可否を確認し、利用可能な音声ファイルを
レート制限付きのチャンク単位でダウンロードします。
"""

import os
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import requests

from .errors import NetworkError, NotFoundError, PipelineError
from .logging_config import get_logger
from .models import (
    BatchDownloadResult,
    CallRecord,
    DownloadFailure,
    DownloadResult,
    FilterResult,
    RecordingInfo,
    RecordingStatus,
)
from .token_cache import TokenCache, call_with_token_retry

RECORDING_LOOKUP_ACCEPT = "application/vnd.integrate.v1.4.0+json"

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]")
_PATH_SEPARATORS = re.compile(r"[/\\]")
_LEADING_DOTS = re.compile(r"^\.+")


def sanitize_segment(value: str) -> str:
    """
    ファイル名の一部を安全な文字列に変換

    ".." を除去し、パス区切りと許可されない文字を "_" に置き換え、
    先頭のドットを除去して100文字に切り詰めます。
    """
    if not value:
        return ""
    value = value.replace("..", "")
    value = _PATH_SEPARATORS.sub("_", value)
    value = _UNSAFE_CHARS.sub("_", value)
    value = _LEADING_DOTS.sub("", value)
    return value[:100]


def build_audio_filename(broker_id: str, call_id: str) -> str:
    """
    音声ファイル名を生成

    Returns:
        "<ブローカーIDの先頭3文字>_<通話ID>.wav"
    """
    safe_broker_id = sanitize_segment(broker_id)[:3] or "unk"
    safe_call_id = sanitize_segment(call_id) or "unknown"
    return f"{safe_broker_id}_{safe_call_id}.wav"


def filter_calls_for_download(
    calls: List[CallRecord],
    min_duration: int = 15
) -> FilterResult:
    """
    ダウンロード対象の通話を抽出

    除外理由は 通話IDなし → 通話時間不足 → 録音URLなし の順で判定し、
    最初に該当した理由だけを数えます。

    Args:
        calls: 通話レコードのリスト
        min_duration: 最小通話時間（秒, この値を含む）

    Returns:
        FilterResult
    """
    result = FilterResult()

    for call in calls:
        if not call.call_id:
            result.skipped_no_call_id += 1
            continue
        if call.duration < min_duration:
            result.skipped_too_short += 1
            continue
        if not call.recording_url or not call.recording_url.strip():
            result.skipped_no_recording += 1
            continue
        result.eligible.append(call)

    return result


class RecordingManager:
    """
    録音のダウンロードを管理するクラス

    録音の利用可否の確認、音声ファイルのストリーミング保存、
    チャンク単位のバッチダウンロードを担当します。

    Attributes:
        token_cache: 録音 API 用のトークンキャッシュ
        base_url: 録音 API のベース URL
        session: HTTP セッション
    """

    DEFAULT_BASE_URL = "https://integrate.versature.com"
    DEFAULT_BATCH_SIZE = 4
    DEFAULT_BATCH_DELAY = 20.0
    CHUNK_SIZE = 8192

    def __init__(
        self,
        token_cache: TokenCache,
        base_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        timeout: int = 60
    ):
        self.token_cache = token_cache
        self.base_url = (base_url or self.DEFAULT_BASE_URL).rstrip("/")
        self.session = session or token_cache.session
        self.sleep = sleep
        self.timeout = timeout
        self.logger = get_logger(__name__)

    def get_recording_info(self, call_id: str) -> RecordingInfo:
        """
        通話IDで録音情報を取得

        401 の場合はトークンを更新して1回だけ再試行します。

        Args:
            call_id: 通話ID

        Returns:
            RecordingInfo（録音がない場合は NotFound、通信失敗は Failed）

        Raises:
            AuthError: トークン更新後も認証に失敗した場合
        """
        url = f"{self.base_url}/api/recordings/call_ids/{call_id}/"

        def request(token: str) -> requests.Response:
            return self.session.get(
                url,
                headers={
                    "Accept": RECORDING_LOOKUP_ACCEPT,
                    "Authorization": f"Bearer {token}",
                },
                timeout=self.timeout
            )

        try:
            response = call_with_token_retry(self.token_cache, request)
        except requests.RequestException as e:
            self.logger.warning(
                "recording_lookup_failed",
                call_id=call_id,
                error_message=str(e)
            )
            return RecordingInfo(status=RecordingStatus.FAILED, call_id=call_id)

        if not response.ok:
            self.logger.debug(
                "recording_lookup_not_found",
                call_id=call_id,
                status_code=response.status_code
            )
            return RecordingInfo(status=RecordingStatus.NOT_FOUND, call_id=call_id)

        try:
            data = response.json()
        except ValueError:
            return RecordingInfo(status=RecordingStatus.FAILED, call_id=call_id)

        recordings = data.get("recordings") if isinstance(data, dict) else None
        if not recordings:
            return RecordingInfo(status=RecordingStatus.NOT_FOUND, call_id=call_id)

        recording = recordings[0]
        return RecordingInfo(
            status=recording.get("status") or RecordingStatus.AVAILABLE,
            call_id=call_id,
            url=recording.get("url"),
            duration=recording.get("duration"),
            file_size=recording.get("file_size")
        )

    def download_audio(
        self,
        call: CallRecord,
        output_dir: str,
        on_progress: Optional[Callable[[float], None]] = None
    ) -> DownloadResult:
        """
        録音ファイルをダウンロードしてローカルに保存

        Args:
            call: 通話レコード
            output_dir: 保存先ディレクトリ
            on_progress: 進捗コールバック (0-100, content-length がある場合のみ)

        Returns:
            DownloadResult

        Raises:
            NotFoundError: 録音が利用できない場合
            NetworkError: ダウンロードに失敗した、またはファイルが空の場合
            AuthError: 認証に失敗した場合
        """
        info = self.get_recording_info(call.call_id)
        if not info.is_available:
            raise NotFoundError(
                f"Recording not available for call {call.call_id} (status: {info.status})",
                details={"status": info.status}
            )

        filename = build_audio_filename(call.broker_id, call.call_id)
        Path(output_dir).mkdir(parents=True, exist_ok=True)
        file_path = os.path.join(output_dir, filename)

        try:
            response = self.session.get(info.url, stream=True, timeout=self.timeout)
        except requests.RequestException as e:
            raise NetworkError(f"Failed to download: {e}")

        try:
            if not response.ok:
                raise NetworkError(
                    f"Failed to download: {response.reason}",
                    details={"status_code": response.status_code}
                )

            total = int(response.headers.get("content-length") or 0)
            received = 0

            with open(file_path, "wb") as f:
                for chunk in response.iter_content(chunk_size=self.CHUNK_SIZE):
                    if not chunk:
                        continue
                    f.write(chunk)
                    received += len(chunk)
                    if on_progress and total > 0:
                        on_progress(min(100.0, received / total * 100))
        except requests.RequestException as e:
            self._remove_file(file_path)
            raise NetworkError(f"Failed to download: {e}")
        except OSError as e:
            self._remove_file(file_path)
            raise NetworkError(f"Failed to save recording: {e}")
        finally:
            response.close()

        size = os.path.getsize(file_path)
        if size == 0:
            self._remove_file(file_path)
            raise NetworkError("Downloaded file is empty")

        self.logger.info(
            "recording_downloaded",
            call_id=call.call_id,
            broker_id=call.broker_id,
            filename=filename,
            size=size
        )

        return DownloadResult(
            file_path=file_path,
            filename=filename,
            size=size,
            call_id=call.call_id,
            broker_id=call.broker_id
        )

    def download_batch(
        self,
        calls: List[CallRecord],
        output_dir: str,
        batch_size: int = DEFAULT_BATCH_SIZE,
        batch_delay: float = DEFAULT_BATCH_DELAY,
        on_progress: Optional[Callable[[int, int, CallRecord], None]] = None,
        on_call_progress: Optional[Callable[[str, float], None]] = None
    ) -> BatchDownloadResult:
        """
        通話リストをチャンク単位でダウンロード

        チャンク内のダウンロードは並行に実行し、チャンク間では batch_delay 秒
        待機します。1件の失敗は同じチャンクの他のダウンロードを中断しません。

        Args:
            calls: ダウンロード対象の通話レコード
            output_dir: 保存先ディレクトリ
            batch_size: チャンクサイズ
            batch_delay: チャンク間の待機時間（秒）
            on_progress: 1件完了するごとに (完了数, 総数, 通話) で呼ばれる
            on_call_progress: 通話ごとのダウンロード進捗 (通話ID, 0-100)

        Returns:
            BatchDownloadResult（成功数 + 失敗数 == len(calls)）
        """
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive: {batch_size}")

        result = BatchDownloadResult()
        total = len(calls)
        completed = 0
        lock = threading.Lock()

        def run(call: CallRecord) -> Tuple[Optional[DownloadResult], Optional[DownloadFailure]]:
            nonlocal completed
            outcome = self._download_one(call, output_dir, on_call_progress)
            if on_progress:
                with lock:
                    completed += 1
                    on_progress(completed, total, call)
            return outcome

        for start in range(0, total, batch_size):
            chunk = calls[start:start + batch_size]

            self.logger.info(
                "download_chunk_started",
                chunk_start=start,
                chunk_size=len(chunk),
                total=total
            )

            with ThreadPoolExecutor(max_workers=len(chunk)) as executor:
                outcomes = list(executor.map(run, chunk))

            for downloaded, failure in outcomes:
                if downloaded is not None:
                    result.successful.append(downloaded)
                else:
                    result.failed.append(failure)

            if start + batch_size < total and batch_delay > 0:
                self.sleep(batch_delay)

        self.logger.info(
            "download_batch_completed",
            total=total,
            successful=len(result.successful),
            failed=len(result.failed)
        )

        return result

    def _download_one(
        self,
        call: CallRecord,
        output_dir: str,
        on_call_progress: Optional[Callable[[str, float], None]]
    ) -> Tuple[Optional[DownloadResult], Optional[DownloadFailure]]:
        progress_callback = None
        if on_call_progress:
            def progress_callback(percent: float) -> None:
                on_call_progress(call.call_id, percent)

        try:
            return self.download_audio(call, output_dir, progress_callback), None
        except PipelineError as e:
            self.logger.warning(
                "recording_download_failed",
                call_id=call.call_id,
                error_type=e.error_type,
                error_message=e.message
            )
            return None, DownloadFailure(call_id=call.call_id, error=e.message)
        except Exception as e:
            self.logger.error(
                "recording_download_error",
                call_id=call.call_id,
                error_type=type(e).__name__,
                error_message=str(e),
                exc_info=True
            )
            return None, DownloadFailure(call_id=call.call_id, error=str(e) or "Download failed")

    @staticmethod
    def _remove_file(file_path: str) -> None:
        if os.path.exists(file_path):
            os.remove(file_path)
