"""
データモデルモジュール (Data Models Module)

通話レコード、録音情報、ダウンロード結果、文字起こし結果、
進捗イベントのデータモデルを定義します。
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class CallRecord:
    """
    通話レコードデータモデル

    プロバイダーの生データを正規化した通話メタデータです。
    作成後は変更されません。

    Attributes:
        call_id: 通話ID (重複排除キー)
        from_number: 発信者電話番号
        to_number: 着信電話番号
        from_username: 発信者ユーザー名 (SIP 形式の場合あり)
        from_name: 発信者表示名
        start_time: 通話開始日時 (ISO-8601)
        duration: 通話時間（秒）
        recording_url: 録音ファイルURL (空の場合あり)
        broker_id: ブローカーID (派生値)
        date: 日付 (YYYY-MM-DD, start_time から派生)
    """
    call_id: str
    from_number: str = ""
    to_number: str = ""
    from_username: str = ""
    from_name: str = ""
    start_time: str = ""
    duration: int = 0
    recording_url: str = ""
    broker_id: str = ""
    date: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CallRecord":
        """
        辞書から CallRecord を作成

        未知のキーは無視し、欠落したキーはデフォルト値で補います。

        Args:
            data: 通話レコードの辞書表現

        Returns:
            CallRecord
        """
        duration = data.get("duration") or 0
        try:
            duration = int(duration)
        except (TypeError, ValueError):
            duration = 0

        return cls(
            call_id=str(data.get("call_id") or ""),
            from_number=str(data.get("from_number") or ""),
            to_number=str(data.get("to_number") or ""),
            from_username=str(data.get("from_username") or ""),
            from_name=str(data.get("from_name") or ""),
            start_time=str(data.get("start_time") or ""),
            duration=duration,
            recording_url=str(data.get("recording_url") or ""),
            broker_id=str(data.get("broker_id") or ""),
            date=str(data.get("date") or ""),
        )


class RecordingStatus:
    """録音ステータス"""
    AVAILABLE = "Available"
    PROCESSING = "Processing"
    FAILED = "Failed"
    NOT_FOUND = "NotFound"


@dataclass
class RecordingInfo:
    """
    録音情報

    録音可否の問い合わせ結果です。永続化されません。
    """
    status: str
    call_id: str
    url: Optional[str] = None
    duration: Optional[int] = None
    file_size: Optional[int] = None

    @property
    def is_available(self) -> bool:
        return self.status == RecordingStatus.AVAILABLE and bool(self.url)


@dataclass
class DownloadResult:
    """
    ダウンロード結果

    空でないファイルに対してのみ作成されます。

    Attributes:
        file_path: 保存されたファイルのパス
        filename: ファイル名
        size: ファイルサイズ（バイト, 0より大きい）
        call_id: 通話ID
        broker_id: ブローカーID
    """
    file_path: str
    filename: str
    size: int
    call_id: str
    broker_id: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DownloadFailure:
    """ダウンロード失敗 (理由付き)"""
    call_id: str
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FilterResult:
    """ダウンロード対象のフィルタ結果"""
    eligible: List[CallRecord] = field(default_factory=list)
    skipped_too_short: int = 0
    skipped_no_recording: int = 0
    skipped_no_call_id: int = 0


@dataclass
class BatchDownloadResult:
    """バッチダウンロード結果"""
    successful: List[DownloadResult] = field(default_factory=list)
    failed: List[DownloadFailure] = field(default_factory=list)


@dataclass
class DayResult:
    """
    日別の取得結果

    Attributes:
        date: 日付 (YYYY-MM-DD)
        calls: その日の通話レコード
        status: success または error
        error: エラーメッセージ (status が error の場合)
    """
    date: str
    calls: List[CallRecord] = field(default_factory=list)
    status: str = "success"
    error: Optional[str] = None

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "date": self.date,
            "calls": [call.to_dict() for call in self.calls],
            "callCount": self.call_count,
            "status": self.status,
        }
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class FetchResult:
    """通話取得結果 (日付範囲全体)"""
    start_date: str
    end_date: str
    calls: List[CallRecord] = field(default_factory=list)
    daily_results: List[DayResult] = field(default_factory=list)


@dataclass
class TranscriptionFile:
    """
    文字起こし対象ファイル

    broker_id と call_id はファイル名を最初のアンダースコアで分割して得ます。
    """
    filepath: str
    filename: str
    broker_id: str
    call_id: str
    transcript_file: str
    raw_transcript_file: str


@dataclass
class Utterance:
    """話者ごとの発話 (start/end はミリ秒)"""
    start: int
    end: int
    text: str
    speaker: str
    confidence: float = 0.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Utterance":
        return cls(
            start=int(data.get("start") or 0),
            end=int(data.get("end") or 0),
            text=data.get("text") or "",
            speaker=str(data.get("speaker") or ""),
            confidence=float(data.get("confidence") or 0.0),
        )


class TranscriptStatus:
    """文字起こしジョブのステータス"""
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class TranscriptionResult:
    """
    文字起こし結果

    プロバイダーが作成し、バッチ処理が整形テキストと
    生 JSON スナップショットとして保存します。
    """
    id: str
    status: str
    text: Optional[str] = None
    utterances: Optional[List[Utterance]] = None
    error: Optional[str] = None
    audio_duration: Optional[float] = None
    confidence: Optional[float] = None
    language_code: Optional[str] = None
    created: Optional[str] = None
    words: Optional[List[Any]] = None

    @property
    def is_finished(self) -> bool:
        return self.status in (TranscriptStatus.COMPLETED, TranscriptStatus.ERROR)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TranscriptionResult":
        utterances = data.get("utterances")
        return cls(
            id=str(data.get("id") or ""),
            status=data.get("status") or TranscriptStatus.QUEUED,
            text=data.get("text"),
            utterances=(
                [Utterance.from_dict(u) for u in utterances]
                if utterances is not None else None
            ),
            error=data.get("error"),
            audio_duration=data.get("audio_duration"),
            confidence=data.get("confidence"),
            language_code=data.get("language_code"),
            created=data.get("created"),
            words=data.get("words"),
        )

    def to_snapshot(self) -> Dict[str, Any]:
        """保存用の生 JSON スナップショットを作成"""
        return {
            "id": self.id,
            "status": self.status,
            "text": self.text,
            "utterances": (
                [asdict(u) for u in self.utterances]
                if self.utterances is not None else None
            ),
            "words": self.words,
            "audio_duration": self.audio_duration,
            "confidence": self.confidence,
            "language_code": self.language_code,
            "created": self.created,
            "error": self.error,
        }


@dataclass
class TranscriptionOutcome:
    """ファイル単位の文字起こし結果"""
    file: str
    success: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"file": self.file, "success": self.success}
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class ProgressEvent:
    """
    進捗イベント

    Attributes:
        call_id: 通話ID
        broker_id: ブローカーID
        filename: ファイル名
        status: ステータス (pending, uploading, transcribing, completed, failed)
        progress: 進捗率 (0-100)
        error: エラーメッセージ（オプション）
    """
    call_id: str
    broker_id: str
    filename: str
    status: str
    progress: float
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.error is None:
            data.pop("error")
        return data
