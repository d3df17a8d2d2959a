"""
エラーモジュール (Errors Module)

パイプライン全体で使用する例外クラスを定義します。
アイテム単位の失敗は結果リストに記録され、
セットアップ時の失敗のみが呼び出し元へ伝播します。
"""

from typing import Any, Dict, Optional


class PipelineError(Exception):
    """
    パイプラインエラーの基底クラス

    Attributes:
        message: エラーメッセージ
        details: 追加の詳細情報
    """

    error_type = "pipeline_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(PipelineError):
    """入力検証エラー (外部呼び出しの前に発生)"""

    error_type = "validation_error"


class AuthError(PipelineError):
    """トークン取得・更新の失敗"""

    error_type = "auth_error"


class NotFoundError(PipelineError):
    """録音が利用できない"""

    error_type = "not_found"


class NetworkError(PipelineError):
    """ダウンロード・アップロード中の通信失敗"""

    error_type = "network_error"


class TranscriptionTimeoutError(PipelineError):
    """
    文字起こしタイムアウト

    プロバイダーが報告したエラーとは区別されます。
    """

    error_type = "timeout"


class ProviderError(PipelineError):
    """
    プロバイダー API エラー

    外部 API が 2xx 以外のステータスを返した場合に発生します。

    Attributes:
        status_code: HTTP ステータスコード
    """

    error_type = "provider_error"

    def __init__(
        self,
        message: str,
        status_code: int = 502,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.status_code = status_code
