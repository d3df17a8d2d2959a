"""
設定管理モジュール (Configuration Management Module)

環境変数からパイプライン設定を読み込み、検証を行います。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import os


class ConfigurationError(Exception):
    """設定エラー例外クラス"""
    pass


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name, "")
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} は整数である必要があります: {value}")


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name, "")
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"{name} は数値である必要があります: {value}")


@dataclass
class Config:
    """
    パイプライン設定

    認証情報は読み込み時点では任意です（リクエストごとに渡すこともできます）。
    各ステージの実行可否は stage_status() で確認します。
    """
    # Net2Phone API認証情報 (ステージ1, 2)
    net2phone_client_id: Optional[str]
    net2phone_client_secret: Optional[str]
    net2phone_base_url: str
    net2phone_token_endpoint: str
    net2phone_calls_endpoint: str
    recordings_base_url: str

    # AssemblyAI (ステージ3)
    assemblyai_api_key: Optional[str]
    assemblyai_base_url: str

    # 出力ディレクトリ
    output_dir: str

    # ステージ1: 通話取得
    page_size: int
    min_duration: int
    day_delay: float

    # ステージ2: ダウンロード
    download_batch_size: int
    download_batch_delay: float

    # ステージ3: 文字起こし
    transcription_concurrency: int
    poll_interval: float
    transcription_timeout: float

    # 進捗セッション保持時間（秒）
    progress_ttl: float

    # ロギング設定
    log_level: str

    # デフォルト値の定数
    DEFAULT_NET2PHONE_BASE_URL: str = field(default="https://api.net2phone.com", init=False, repr=False)
    DEFAULT_TOKEN_ENDPOINT: str = field(default="/oauth/token", init=False, repr=False)
    DEFAULT_CALLS_ENDPOINT: str = field(default="/v1/calls", init=False, repr=False)
    DEFAULT_RECORDINGS_BASE_URL: str = field(default="https://integrate.versature.com", init=False, repr=False)
    DEFAULT_ASSEMBLYAI_BASE_URL: str = field(default="https://api.assemblyai.com/v2", init=False, repr=False)
    DEFAULT_OUTPUT_DIR: str = field(default="output", init=False, repr=False)
    DEFAULT_PAGE_SIZE: int = field(default=500, init=False, repr=False)
    DEFAULT_MIN_DURATION: int = field(default=15, init=False, repr=False)
    DEFAULT_DAY_DELAY: float = field(default=1.0, init=False, repr=False)
    DEFAULT_DOWNLOAD_BATCH_SIZE: int = field(default=4, init=False, repr=False)
    DEFAULT_DOWNLOAD_BATCH_DELAY: float = field(default=20.0, init=False, repr=False)
    DEFAULT_TRANSCRIPTION_CONCURRENCY: int = field(default=3, init=False, repr=False)
    DEFAULT_POLL_INTERVAL: float = field(default=3.0, init=False, repr=False)
    DEFAULT_TRANSCRIPTION_TIMEOUT: float = field(default=300.0, init=False, repr=False)
    DEFAULT_PROGRESS_TTL: float = field(default=60.0, init=False, repr=False)
    DEFAULT_LOG_LEVEL: str = field(default="INFO", init=False, repr=False)

    @classmethod
    def from_env(cls) -> 'Config':
        """
        環境変数から設定を読み込む

        オプションの環境変数:
            - NET2PHONE_CLIENT_ID / NET2PHONE_CLIENT_SECRET: Net2Phone 認証情報
            - NET2PHONE_BASE_URL: Net2Phone API のベース URL
            - NET2PHONE_TOKEN_ENDPOINT: トークンエンドポイント (デフォルト: /oauth/token)
            - NET2PHONE_CALLS_ENDPOINT: 通話ログエンドポイント (デフォルト: /v1/calls)
            - RECORDINGS_BASE_URL: 録音 API のベース URL
            - ASSEMBLYAI_API_KEY: AssemblyAI API キー
            - ASSEMBLYAI_BASE_URL: AssemblyAI API のベース URL
            - OUTPUT_DIR: 出力ディレクトリ (デフォルト: output)
            - PAGE_SIZE: 1ページあたりの件数 (デフォルト: 500)
            - MIN_DURATION: 最小通話時間（秒） (デフォルト: 15)
            - DAY_DELAY: 日ごとの待機時間（秒） (デフォルト: 1)
            - DOWNLOAD_BATCH_SIZE: ダウンロードのチャンクサイズ (デフォルト: 4)
            - DOWNLOAD_BATCH_DELAY: チャンク間の待機時間（秒） (デフォルト: 20)
            - TRANSCRIPTION_CONCURRENCY: 文字起こし同時実行数 (デフォルト: 3)
            - POLL_INTERVAL: ポーリング間隔（秒） (デフォルト: 3)
            - TRANSCRIPTION_TIMEOUT: 文字起こしタイムアウト（秒） (デフォルト: 300)
            - PROGRESS_TTL: 進捗セッションの保持時間（秒） (デフォルト: 60)
            - LOG_LEVEL: ログレベル (デフォルト: INFO)

        Returns:
            Config: 設定オブジェクト

        Raises:
            ConfigurationError: 設定値が無効な場合
        """
        config = cls(
            net2phone_client_id=os.environ.get("NET2PHONE_CLIENT_ID") or None,
            net2phone_client_secret=os.environ.get("NET2PHONE_CLIENT_SECRET") or None,
            net2phone_base_url=os.environ.get("NET2PHONE_BASE_URL", "https://api.net2phone.com"),
            net2phone_token_endpoint=os.environ.get("NET2PHONE_TOKEN_ENDPOINT", "/oauth/token"),
            net2phone_calls_endpoint=os.environ.get("NET2PHONE_CALLS_ENDPOINT", "/v1/calls"),
            recordings_base_url=os.environ.get("RECORDINGS_BASE_URL", "https://integrate.versature.com"),
            assemblyai_api_key=os.environ.get("ASSEMBLYAI_API_KEY") or None,
            assemblyai_base_url=os.environ.get("ASSEMBLYAI_BASE_URL", "https://api.assemblyai.com/v2"),
            output_dir=os.environ.get("OUTPUT_DIR", "output"),
            page_size=_env_int("PAGE_SIZE", 500),
            min_duration=_env_int("MIN_DURATION", 15),
            day_delay=_env_float("DAY_DELAY", 1.0),
            download_batch_size=_env_int("DOWNLOAD_BATCH_SIZE", 4),
            download_batch_delay=_env_float("DOWNLOAD_BATCH_DELAY", 20.0),
            transcription_concurrency=_env_int("TRANSCRIPTION_CONCURRENCY", 3),
            poll_interval=_env_float("POLL_INTERVAL", 3.0),
            transcription_timeout=_env_float("TRANSCRIPTION_TIMEOUT", 300.0),
            progress_ttl=_env_float("PROGRESS_TTL", 60.0),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )

        config.validate()

        return config

    @property
    def audio_dir(self) -> str:
        return os.path.join(self.output_dir, "audio")

    @property
    def transcripts_dir(self) -> str:
        return os.path.join(self.output_dir, "transcripts")

    @property
    def has_net2phone_credentials(self) -> bool:
        return bool(self.net2phone_client_id and self.net2phone_client_secret)

    @property
    def has_assemblyai_key(self) -> bool:
        return bool(self.assemblyai_api_key)

    def validate(self) -> None:
        """
        設定の妥当性を検証

        Raises:
            ConfigurationError: 設定値が無効な場合
        """
        positive_ints = {
            "PAGE_SIZE": self.page_size,
            "DOWNLOAD_BATCH_SIZE": self.download_batch_size,
            "TRANSCRIPTION_CONCURRENCY": self.transcription_concurrency,
        }
        for name, value in positive_ints.items():
            if value <= 0:
                raise ConfigurationError(
                    f"{name} は正の整数である必要があります: {value}"
                )

        if self.min_duration < 0:
            raise ConfigurationError(
                f"MIN_DURATION は0以上の整数である必要があります: {self.min_duration}"
            )

        non_negative = {
            "DAY_DELAY": self.day_delay,
            "DOWNLOAD_BATCH_DELAY": self.download_batch_delay,
            "PROGRESS_TTL": self.progress_ttl,
        }
        for name, value in non_negative.items():
            if value < 0:
                raise ConfigurationError(
                    f"{name} は0以上である必要があります: {value}"
                )

        if self.poll_interval <= 0:
            raise ConfigurationError(
                f"POLL_INTERVAL は正の数である必要があります: {self.poll_interval}"
            )
        if self.transcription_timeout <= 0:
            raise ConfigurationError(
                f"TRANSCRIPTION_TIMEOUT は正の数である必要があります: {self.transcription_timeout}"
            )

        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_log_levels:
            raise ConfigurationError(
                f"LOG_LEVEL は {valid_log_levels} のいずれかである必要があります: {self.log_level}"
            )

    def missing_variables(self, stage: int) -> List[str]:
        """
        指定ステージに不足している環境変数を返す

        Args:
            stage: ステージ番号 (1, 2, 3)

        Returns:
            不足している環境変数名のリスト

        Raises:
            ConfigurationError: 未知のステージ番号の場合
        """
        missing = []
        if stage in (1, 2):
            if not self.net2phone_client_id:
                missing.append("NET2PHONE_CLIENT_ID")
            if not self.net2phone_client_secret:
                missing.append("NET2PHONE_CLIENT_SECRET")
        elif stage == 3:
            if not self.assemblyai_api_key:
                missing.append("ASSEMBLYAI_API_KEY")
        else:
            raise ConfigurationError(f"未知のステージです: {stage}")
        return missing

    def stage_status(self) -> List[Dict[str, Any]]:
        """
        各ステージの設定状況を返す

        Returns:
            ステージごとの設定状況のリスト
        """
        stages = [
            (1, "Get Call IDs", "Net2Phone"),
            (2, "Download Audio", "Net2Phone"),
            (3, "Transcribe Audio", "AssemblyAI"),
        ]
        status = []
        for number, name, service in stages:
            missing = self.missing_variables(number)
            status.append({
                "stage": number,
                "name": name,
                "service": service,
                "configured": not missing,
                "missing": missing,
                "status": "ready" if not missing else "missing_credentials",
            })
        return status
