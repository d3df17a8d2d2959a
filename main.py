#!/usr/bin/env python3
"""
Call Recording Transcription Pipeline アプリケーションエントリーポイント

設定を読み込み、検証し、Flask 開発サーバーを起動します。

Usage:
    python main.py

Environment Variables:
    - NET2PHONE_CLIENT_ID / NET2PHONE_CLIENT_SECRET: ステージ1, 2 の認証情報
    - ASSEMBLYAI_API_KEY: ステージ3 の API キー
    - OUTPUT_DIR: 出力ディレクトリ (デフォルト: output)
    - LOG_LEVEL: ログレベル (デフォルト: INFO)
    - HOST: サーバーホスト (デフォルト: 0.0.0.0)
    - PORT: サーバーポート (デフォルト: 5000)
    - DEBUG: デバッグモード (デフォルト: False)
"""

import os
import sys

from call_pipeline.config import Config, ConfigurationError
from call_pipeline.app import create_app


def main() -> int:
    """
    アプリケーションのメインエントリーポイント

    Returns:
        int: 終了コード (0: 正常終了, 1: エラー終了)
    """
    try:
        print("設定を読み込んでいます...")
        config = Config.from_env()
        print("設定の読み込みが完了しました。")

        for stage in config.stage_status():
            if not stage["configured"]:
                print(
                    f"[警告] ステージ{stage['stage']} ({stage['name']}) の認証情報が未設定です: "
                    f"{', '.join(stage['missing'])}",
                    file=sys.stderr
                )

        app = create_app(config)

        host = os.environ.get("HOST", "0.0.0.0")
        port = int(os.environ.get("PORT", "5000"))
        debug = os.environ.get("DEBUG", "").lower() in ("true", "1", "yes")

        print(f"サーバーを起動しています... (host={host}, port={port}, debug={debug})")
        print("サーバーを停止するには Ctrl+C を押してください。")

        app.run(host=host, port=port, debug=debug, threaded=True)

        return 0

    except ConfigurationError as e:
        print("\n[エラー] 設定エラーが発生しました:", file=sys.stderr)
        print(f"  {e}", file=sys.stderr)
        return 1

    except KeyboardInterrupt:
        print("\nサーバーを停止しました。")
        return 0


if __name__ == "__main__":
    sys.exit(main())
