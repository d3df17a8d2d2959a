"""
Call Recording Transcription Pipeline

通話ログの取得、録音のダウンロード、話者分離付き文字起こしを行うパイプライン
"""

__version__ = "0.1.0"

from call_pipeline.config import Config, ConfigurationError

__all__ = ["Config", "ConfigurationError"]
