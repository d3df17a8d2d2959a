"""
文字起こしモジュール (Transcription Module)

AssemblyAI に音声をアップロードし、話者分離付きの文字起こしジョブを
投入して完了までポーリングし、整形テキストと生 JSON を保存します。
"""

import json
import os
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import requests

from .errors import (
    NetworkError,
    PipelineError,
    ProviderError,
    TranscriptionTimeoutError,
    ValidationError,
)
from .logging_config import get_logger
from .models import (
    TranscriptionFile,
    TranscriptionOutcome,
    TranscriptionResult,
    TranscriptStatus,
)

_SAFE_AUDIO_FILENAME = re.compile(r"^[A-Za-z0-9._-]+\.wav$", re.IGNORECASE)
_WAV_SUFFIX = re.compile(r"\.wav$", re.IGNORECASE)


@dataclass
class TranscriptionConfig:
    """文字起こしジョブの固定設定"""
    speech_model: str = "best"
    speaker_labels: bool = True
    language_code: str = "en_us"


def format_timestamp(milliseconds: int) -> str:
    """
    ミリ秒をタイムスタンプ文字列に変換

    1時間以上の場合のみ時間を含めます。

    Examples:
        3661000 -> "1:01:01"
        0 -> "0:00"
    """
    total_seconds = int(milliseconds) // 1000
    hours = total_seconds // 3600
    minutes = (total_seconds % 3600) // 60
    seconds = total_seconds % 60
    if hours > 0:
        return f"{hours}:{minutes:02d}:{seconds:02d}"
    return f"{minutes}:{seconds:02d}"


def format_transcript(result: TranscriptionResult) -> str:
    """
    話者ラベルとタイムスタンプ付きのテキストに整形

    各行は "[m:ss] Speaker <id>: <text>" の形式です。
    """
    if result.status == TranscriptStatus.ERROR:
        return f"Transcription failed: {result.error or 'Unknown error'}"

    if not result.utterances:
        return result.text or "No transcript available"

    lines = []
    for utterance in result.utterances:
        timestamp = format_timestamp(utterance.start)
        lines.append(f"[{timestamp}] Speaker {utterance.speaker}: {utterance.text}")
    return "\n".join(lines)


def validate_audio_filename(filename: str) -> str:
    """
    音声ファイル名を検証

    Raises:
        ValidationError: 許可されない文字、パス区切り、".." を含む場合
    """
    filename = str(filename or "")
    if ".." in filename or "/" in filename or "\\" in filename:
        raise ValidationError(
            "Invalid filename - path traversal detected",
            details={"filename": filename}
        )
    if not _SAFE_AUDIO_FILENAME.match(filename):
        raise ValidationError(
            "Invalid filename format: must contain only letters, numbers, dots, "
            "underscores, hyphens and end with .wav",
            details={"filename": filename}
        )
    return filename


def parse_audio_filename(filename: str) -> Tuple[str, str]:
    """
    ファイル名からブローカーIDと通話IDを取り出す

    拡張子を除いた名前を最初のアンダースコアで分割し、
    残り（アンダースコアを含む場合あり）を通話IDとします。

    Returns:
        (broker_id, call_id)

    Raises:
        ValidationError: ファイル名が無効、またはアンダースコアを含まない場合
    """
    filename = validate_audio_filename(filename)
    stem = _WAV_SUFFIX.sub("", filename)
    broker_id, sep, call_id = stem.partition("_")
    if not sep or not broker_id or not call_id:
        raise ValidationError(
            "Invalid filename format: expected <broker>_<call_id>.wav",
            details={"filename": filename}
        )
    return broker_id, call_id


def build_transcription_file(
    filename: str,
    audio_dir: str,
    transcripts_dir: str
) -> TranscriptionFile:
    """ファイル名から TranscriptionFile を作成"""
    broker_id, call_id = parse_audio_filename(filename)
    base = f"{broker_id}_{call_id}"
    return TranscriptionFile(
        filepath=os.path.join(audio_dir, filename),
        filename=filename,
        broker_id=broker_id,
        call_id=call_id,
        transcript_file=os.path.join(transcripts_dir, f"{base}.txt"),
        raw_transcript_file=os.path.join(transcripts_dir, "raw", f"{base}.json"),
    )


def get_audio_files_for_transcription(
    audio_dir: str,
    transcripts_dir: str
) -> List[TranscriptionFile]:
    """
    文字起こしが未完了の音声ファイルを列挙

    文字起こし結果のディレクトリがなければ作成します。

    Args:
        audio_dir: 音声ファイルのディレクトリ
        transcripts_dir: 文字起こし結果のディレクトリ

    Returns:
        対応する .txt がまだない .wav ファイルのリスト
    """
    logger = get_logger(__name__)
    Path(transcripts_dir, "raw").mkdir(parents=True, exist_ok=True)

    if not os.path.isdir(audio_dir):
        return []

    pending = []
    for filename in sorted(os.listdir(audio_dir)):
        if not filename.lower().endswith(".wav"):
            continue
        try:
            file_info = build_transcription_file(filename, audio_dir, transcripts_dir)
        except ValidationError as e:
            logger.debug("audio_file_skipped", filename=filename, reason=e.message)
            continue
        if not os.path.exists(file_info.transcript_file):
            pending.append(file_info)

    return pending


class TranscriptionClient:
    """
    AssemblyAI クライアント

    アップロード、ジョブ投入、ポーリング、結果の保存、
    同時実行数を制限したバッチ処理を担当します。

    Attributes:
        api_key: AssemblyAI API キー
        base_url: API のベース URL
        config: 文字起こしジョブの設定
    """

    DEFAULT_BASE_URL = "https://api.assemblyai.com/v2"
    DEFAULT_POLL_INTERVAL = 3.0
    DEFAULT_TIMEOUT = 300.0
    DEFAULT_CONCURRENCY = 3

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        config: Optional[TranscriptionConfig] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_wait: float = DEFAULT_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        timeout: int = 120
    ):
        self.api_key = api_key
        self.base_url = (base_url or self.DEFAULT_BASE_URL).rstrip("/")
        self.session = session or requests.Session()
        self.config = config or TranscriptionConfig()
        self.poll_interval = poll_interval
        self.max_wait = max_wait
        self.sleep = sleep
        self.clock = clock
        self.timeout = timeout
        self.logger = get_logger(__name__)

    def _request(self, method: str, path: str, action: str, **kwargs) -> dict:
        headers = {"authorization": self.api_key}
        headers.update(kwargs.pop("headers", {}))
        try:
            response = self.session.request(
                method,
                f"{self.base_url}{path}",
                headers=headers,
                timeout=self.timeout,
                **kwargs
            )
        except requests.RequestException as e:
            raise NetworkError(f"Failed to {action}: {e}")

        if not response.ok:
            raise ProviderError(
                f"Failed to {action}: {response.reason}",
                status_code=response.status_code
            )
        try:
            return response.json()
        except ValueError:
            raise ProviderError(f"Failed to {action}: invalid JSON response")

    def upload_audio(self, file_path: str) -> str:
        """
        音声ファイルをアップロード

        Returns:
            アップロード URL

        Raises:
            PipelineError: ファイルを読めない場合
            NetworkError: 通信に失敗した場合
            ProviderError: API が 2xx 以外を返した場合
        """
        try:
            with open(file_path, "rb") as f:
                audio = f.read()
        except OSError as e:
            raise PipelineError(f"Failed to read audio file: {e}")

        data = self._request(
            "POST",
            "/upload",
            "upload audio",
            headers={"content-type": "application/octet-stream"},
            data=audio
        )
        return data["upload_url"]

    def create_transcription(self, audio_url: str, config: Optional[TranscriptionConfig] = None) -> str:
        """文字起こしジョブを投入してジョブIDを返す"""
        payload = {"audio_url": audio_url}
        payload.update(asdict(config or self.config))
        data = self._request(
            "POST",
            "/transcript",
            "create transcription",
            headers={"content-type": "application/json"},
            json=payload
        )
        return data["id"]

    def get_transcription_status(self, transcript_id: str) -> TranscriptionResult:
        """ジョブの現在の状態を取得"""
        data = self._request(
            "GET",
            f"/transcript/{transcript_id}",
            "get transcription status"
        )
        return TranscriptionResult.from_dict(data)

    def wait_for_transcription(
        self,
        transcript_id: str,
        max_wait: Optional[float] = None,
        poll_interval: Optional[float] = None
    ) -> TranscriptionResult:
        """
        ジョブが completed または error になるまでポーリング

        Args:
            transcript_id: ジョブID
            max_wait: 最大待機時間（秒）
            poll_interval: ポーリング間隔（秒）

        Returns:
            完了またはエラーの TranscriptionResult

        Raises:
            TranscriptionTimeoutError: 最大待機時間を超えた場合
        """
        max_wait = self.max_wait if max_wait is None else max_wait
        poll_interval = self.poll_interval if poll_interval is None else poll_interval
        started = self.clock()

        while self.clock() - started < max_wait:
            result = self.get_transcription_status(transcript_id)
            if result.is_finished:
                return result
            self.sleep(poll_interval)

        raise TranscriptionTimeoutError(
            f"Transcription timeout after {max_wait:g}s",
            details={"transcript_id": transcript_id}
        )

    def transcribe_file(self, file_info: TranscriptionFile) -> TranscriptionResult:
        """
        1ファイルを文字起こしして結果を保存

        status が error の場合も整形テキストと生 JSON を保存します。

        Returns:
            TranscriptionResult
        """
        self.logger.info("transcription_started", filename=file_info.filename)

        audio_url = self.upload_audio(file_info.filepath)
        transcript_id = self.create_transcription(audio_url)
        self.logger.debug(
            "transcription_submitted",
            filename=file_info.filename,
            transcript_id=transcript_id
        )

        result = self.wait_for_transcription(transcript_id)
        self.save_result(file_info, result)

        self.logger.info(
            "transcription_finished",
            filename=file_info.filename,
            transcript_id=transcript_id,
            status=result.status
        )
        return result

    def save_result(self, file_info: TranscriptionFile, result: TranscriptionResult) -> None:
        """整形テキストと生 JSON スナップショットを書き込む"""
        Path(file_info.transcript_file).parent.mkdir(parents=True, exist_ok=True)
        Path(file_info.raw_transcript_file).parent.mkdir(parents=True, exist_ok=True)

        with open(file_info.transcript_file, "w", encoding="utf-8") as f:
            f.write(format_transcript(result))

        with open(file_info.raw_transcript_file, "w", encoding="utf-8") as f:
            json.dump(result.to_snapshot(), f, indent=2, ensure_ascii=False)

    def transcribe_batch(
        self,
        files: List[TranscriptionFile],
        concurrency_limit: int = DEFAULT_CONCURRENCY,
        on_progress: Optional[Callable[[int, int, TranscriptionOutcome], None]] = None
    ) -> List[TranscriptionOutcome]:
        """
        複数ファイルを同時実行数を制限して文字起こし

        concurrency_limit 件ずつのチャンクを順番に処理し、チャンク内は並行に
        実行します。on_progress は1ファイル完了するごとに
        (完了数, 総数, 結果) で呼ばれ、完了数は単調に増加します。

        Returns:
            入力順の TranscriptionOutcome のリスト
        """
        if concurrency_limit <= 0:
            raise ValueError(f"concurrency_limit must be positive: {concurrency_limit}")

        total = len(files)
        completed = 0
        lock = threading.Lock()
        outcomes: List[TranscriptionOutcome] = []

        def run(file_info: TranscriptionFile) -> TranscriptionOutcome:
            nonlocal completed
            outcome = self._transcribe_one(file_info)
            with lock:
                completed += 1
                if on_progress:
                    on_progress(completed, total, outcome)
            return outcome

        for start in range(0, total, concurrency_limit):
            chunk = files[start:start + concurrency_limit]
            with ThreadPoolExecutor(max_workers=len(chunk)) as executor:
                outcomes.extend(executor.map(run, chunk))

        self.logger.info(
            "transcription_batch_completed",
            total=total,
            successful=sum(1 for o in outcomes if o.success),
            failed=sum(1 for o in outcomes if not o.success)
        )
        return outcomes

    def _transcribe_one(self, file_info: TranscriptionFile) -> TranscriptionOutcome:
        try:
            result = self.transcribe_file(file_info)
        except PipelineError as e:
            self.logger.warning(
                "transcription_failed",
                filename=file_info.filename,
                error_type=e.error_type,
                error_message=e.message
            )
            return TranscriptionOutcome(file=file_info.filename, success=False, error=e.message)
        except Exception as e:
            self.logger.error(
                "transcription_error",
                filename=file_info.filename,
                error_type=type(e).__name__,
                error_message=str(e),
                exc_info=True
            )
            return TranscriptionOutcome(
                file=file_info.filename,
                success=False,
                error=str(e) or "Unknown error"
            )

        return TranscriptionOutcome(
            file=file_info.filename,
            success=result.status == TranscriptStatus.COMPLETED,
            error=result.error
        )
