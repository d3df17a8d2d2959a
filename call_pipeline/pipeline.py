"""
パイプラインモジュール (Pipeline Module)

3つのステージ（通話取得、音声ダウンロード、文字起こし）を
単純な入力と辞書形式の結果でそれぞれ独立に実行します。

入力の検証と認証情報の確認は外部呼び出しの前に行い、
失敗した場合はステージ全体を中断します。アイテム単位の失敗は
結果に記録され、他のアイテムの処理は継続します。
"""

import os
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

import requests

from .call_fetcher import CallFetcher, parse_date
from .config import Config
from .errors import ValidationError
from .logging_config import get_logger
from .models import CallRecord, ProgressEvent, TranscriptionFile, TranscriptionOutcome
from .progress import ProgressTracker
from .recording_manager import RecordingManager, filter_calls_for_download
from .token_cache import TokenCache
from .transcription import (
    TranscriptionClient,
    build_transcription_file,
    get_audio_files_for_transcription,
    validate_audio_filename,
)

logger = get_logger(__name__)


def _pick(value: Any, default: Any) -> Any:
    return default if value is None else value


def _require_net2phone_credentials(
    config: Config,
    client_id: Optional[str],
    client_secret: Optional[str]
) -> tuple:
    client_id = client_id or config.net2phone_client_id
    client_secret = client_secret or config.net2phone_client_secret
    if not client_id or not client_secret:
        missing = []
        if not client_id:
            missing.append("NET2PHONE_CLIENT_ID")
        if not client_secret:
            missing.append("NET2PHONE_CLIENT_SECRET")
        raise ValidationError(
            "Net2Phone credentials are required",
            details={"missing": missing}
        )
    return client_id, client_secret


def run_fetch_stage(
    config: Config,
    start_date: Any,
    end_date: Any,
    client_id: Optional[str] = None,
    client_secret: Optional[str] = None,
    base_url: Optional[str] = None,
    token_endpoint: Optional[str] = None,
    calls_endpoint: Optional[str] = None,
    page_size: Optional[int] = None,
    min_duration: Optional[int] = None,
    day_delay: Optional[float] = None,
    session: Optional[requests.Session] = None,
    sleep: Callable[[float], None] = time.sleep
) -> Dict[str, Any]:
    """
    ステージ1: 日付範囲の通話を取得

    Returns:
        {"success", "total_calls", "daily_results", "calls", "date_range"}

    Raises:
        ValidationError: 日付・認証情報が無効な場合
        AuthError: 開始時点でトークンを取得できない場合
    """
    if not start_date or not end_date:
        raise ValidationError("Start date and end date are required")
    client_id, client_secret = _require_net2phone_credentials(config, client_id, client_secret)

    start = parse_date(start_date)
    end = parse_date(end_date)
    if start > end:
        raise ValidationError(
            "Invalid date range",
            details={"start_date": start.isoformat(), "end_date": end.isoformat()}
        )

    page_size = _pick(page_size, config.page_size)
    min_duration = _pick(min_duration, config.min_duration)
    day_delay = _pick(day_delay, config.day_delay)
    if page_size <= 0:
        raise ValidationError(f"page_size must be positive: {page_size}")
    if min_duration < 0:
        raise ValidationError(f"min_duration must not be negative: {min_duration}")

    base_url = base_url or config.net2phone_base_url
    session = session or requests.Session()
    token_cache = TokenCache(
        base_url.rstrip("/") + (token_endpoint or config.net2phone_token_endpoint),
        client_id,
        client_secret,
        session=session
    )
    token_cache.get_token()

    fetcher = CallFetcher(
        token_cache,
        base_url,
        calls_endpoint or config.net2phone_calls_endpoint,
        session=session,
        sleep=sleep
    )
    result = fetcher.fetch_calls(
        start,
        end,
        min_duration=min_duration,
        page_size=page_size,
        day_delay=day_delay
    )

    return {
        "success": True,
        "total_calls": len(result.calls),
        "daily_results": [day.to_dict() for day in result.daily_results],
        "calls": [call.to_dict() for call in result.calls],
        "date_range": {"start_date": result.start_date, "end_date": result.end_date},
    }


def run_download_stage(
    config: Config,
    calls: Optional[Iterable[Union[CallRecord, Dict[str, Any]]]],
    client_id: Optional[str] = None,
    client_secret: Optional[str] = None,
    base_url: Optional[str] = None,
    output_dir: Optional[str] = None,
    min_duration: Optional[int] = None,
    batch_size: Optional[int] = None,
    batch_delay: Optional[float] = None,
    session: Optional[requests.Session] = None,
    sleep: Callable[[float], None] = time.sleep,
    on_progress: Optional[Callable[[int, int, CallRecord], None]] = None
) -> Dict[str, Any]:
    """
    ステージ2: 対象の通話の録音をダウンロード

    Returns:
        {"stats", "summary", "downloads", "failures"}

    Raises:
        ValidationError: 通話リストや認証情報が無効な場合
        AuthError: 開始時点でトークンを取得できない場合
    """
    if calls is None or isinstance(calls, (str, bytes, dict)):
        raise ValidationError("Calls array is required")
    records: List[CallRecord] = []
    for call in calls:
        if isinstance(call, CallRecord):
            records.append(call)
        elif isinstance(call, dict):
            records.append(CallRecord.from_dict(call))
        else:
            raise ValidationError("Each call must be an object")
    if not records:
        raise ValidationError("No calls provided")

    client_id, client_secret = _require_net2phone_credentials(config, client_id, client_secret)
    min_duration = _pick(min_duration, config.min_duration)
    batch_size = _pick(batch_size, config.download_batch_size)
    if batch_size <= 0:
        raise ValidationError(f"batch_size must be positive: {batch_size}")

    filter_result = filter_calls_for_download(records, min_duration)
    stats = {
        "total_calls": len(records),
        "eligible_calls": len(filter_result.eligible),
        "skipped_no_recording": filter_result.skipped_no_recording,
        "skipped_too_short": filter_result.skipped_too_short,
        "skipped_no_call_id": filter_result.skipped_no_call_id,
    }

    successful: List[Dict[str, Any]] = []
    failed: List[Dict[str, Any]] = []

    if filter_result.eligible:
        base_url = base_url or config.recordings_base_url
        session = session or requests.Session()
        token_cache = TokenCache(
            base_url.rstrip("/") + config.net2phone_token_endpoint,
            client_id,
            client_secret,
            session=session
        )
        token_cache.get_token()

        manager = RecordingManager(token_cache, base_url, session=session, sleep=sleep)
        batch = manager.download_batch(
            filter_result.eligible,
            output_dir or config.audio_dir,
            batch_size=batch_size,
            batch_delay=_pick(batch_delay, config.download_batch_delay),
            on_progress=on_progress
        )
        successful = [r.to_dict() for r in batch.successful]
        failed = [f.to_dict() for f in batch.failed]

    attempted = len(filter_result.eligible)
    logger.info("download_stage_completed", **stats, successful=len(successful), failed=len(failed))

    return {
        "message": "Audio download completed",
        "stats": stats,
        "summary": {
            "attempted": attempted,
            "successful": len(successful),
            "failed": len(failed),
            "success_rate": round(len(successful) / attempted * 100) if attempted else 0,
        },
        "downloads": successful,
        "failures": failed,
    }


def _filename_of(item: Any) -> str:
    if isinstance(item, dict):
        return str(item.get("filename") or "")
    return str(item or "")


def run_transcription_stage(
    config: Config,
    tracker: ProgressTracker,
    audio_files: Optional[Iterable[Any]] = None,
    api_key: Optional[str] = None,
    concurrency_limit: Optional[int] = None,
    audio_dir: Optional[str] = None,
    transcripts_dir: Optional[str] = None,
    session_id: Optional[str] = None,
    client: Optional[TranscriptionClient] = None
) -> Dict[str, Any]:
    """
    ステージ3: 音声ファイルを文字起こし

    audio_files を省略した場合は audio_dir から未処理のファイルを探します。
    文字起こし済みのファイルはスキップします。進捗は tracker のセッションに
    記録され、処理終了後に TTL で削除されます。

    Returns:
        {"session_id", "message", "total_files", "transcribed_files",
         "already_transcribed", "successful", "failed", "results", "transcripts"}

    Raises:
        ValidationError: API キーやファイル名が無効な場合
    """
    api_key = api_key or config.assemblyai_api_key
    if not api_key and client is None:
        raise ValidationError(
            "AssemblyAI API key is required",
            details={"missing": ["ASSEMBLYAI_API_KEY"]}
        )

    audio_dir = audio_dir or config.audio_dir
    transcripts_dir = transcripts_dir or config.transcripts_dir
    concurrency_limit = _pick(concurrency_limit, config.transcription_concurrency)
    if concurrency_limit <= 0:
        raise ValidationError(f"concurrency_limit must be positive: {concurrency_limit}")

    if audio_files is None:
        files: List[TranscriptionFile] = get_audio_files_for_transcription(audio_dir, transcripts_dir)
        total_files = len(files)
    else:
        filenames = [_filename_of(item) for item in audio_files]
        if not filenames:
            raise ValidationError("No audio files provided for transcription")
        for filename in filenames:
            validate_audio_filename(filename)
        # 重複したファイル名は最初の1件だけ残す
        unique_filenames = list(dict.fromkeys(filenames))
        files = [build_transcription_file(f, audio_dir, transcripts_dir) for f in unique_filenames]
        total_files = len(files)

    session_id = tracker.create_session(session_id)
    pending = [f for f in files if not os.path.exists(f.transcript_file)]

    if not pending:
        tracker.schedule_removal(session_id)
        return {
            "session_id": session_id,
            "message": "All files already transcribed",
            "total_files": total_files,
            "transcribed_files": total_files,
            "already_transcribed": total_files,
            "successful": 0,
            "failed": 0,
            "results": [],
            "transcripts": [],
        }

    if client is None:
        client = TranscriptionClient(
            api_key,
            base_url=config.assemblyai_base_url,
            poll_interval=config.poll_interval,
            max_wait=config.transcription_timeout
        )

    by_filename = {f.filename: f for f in pending}

    def on_progress(completed: int, total: int, outcome: TranscriptionOutcome) -> None:
        file_info = by_filename[outcome.file]
        if not outcome.success:
            status = "failed"
        elif completed == total:
            status = "completed"
        else:
            status = "transcribing"
        tracker.append(session_id, ProgressEvent(
            call_id=file_info.call_id,
            broker_id=file_info.broker_id,
            filename=outcome.file,
            status=status,
            progress=completed / total * 100,
            error=None if outcome.success else (outcome.error or "Transcription failed"),
        ))

    logger.info(
        "transcription_stage_started",
        session_id=session_id,
        total_files=total_files,
        pending_files=len(pending),
        concurrency_limit=concurrency_limit
    )

    try:
        outcomes = client.transcribe_batch(pending, concurrency_limit, on_progress)
    finally:
        tracker.schedule_removal(session_id)

    successful = sum(1 for o in outcomes if o.success)

    return {
        "session_id": session_id,
        "message": "Transcription completed",
        "total_files": total_files,
        "transcribed_files": len(pending),
        "already_transcribed": total_files - len(pending),
        "successful": successful,
        "failed": len(outcomes) - successful,
        "results": [o.to_dict() for o in outcomes],
        "transcripts": [
            {
                "call_id": f.call_id,
                "broker_id": f.broker_id,
                "filename": f.filename,
                "transcript_path": f.transcript_file,
                "raw_transcript_path": f.raw_transcript_file,
            }
            for f in pending
        ],
    }
