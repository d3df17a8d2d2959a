"""
Flask アプリケーションモジュール (Flask Application Module)

各パイプラインステージを HTTP エンドポイントとして公開する薄い変換層です。
リクエストの JSON をステージ関数の引数に変換し、結果を JSON で返します。
"""

import json
import traceback
from typing import Any, Dict, Optional, Tuple

from flask import Flask, Response, jsonify, request, stream_with_context

from .config import Config
from .errors import AuthError, PipelineError, ProviderError, ValidationError
from .logging_config import configure_structlog, get_logger
from .pipeline import run_download_stage, run_fetch_stage, run_transcription_stage
from .progress import ProgressTracker, iter_new_events


def validate_json_request(data: Any, required_fields: Optional[list] = None) -> Tuple[bool, Optional[str]]:
    """
    JSON リクエストを検証

    Args:
        data: 検証するデータ
        required_fields: 必須フィールドのリスト（オプション）

    Returns:
        (検証結果, エラーメッセージ) のタプル
    """
    if data is None:
        return False, "Invalid JSON: request body is empty or malformed"

    if not isinstance(data, dict):
        return False, "Invalid JSON: request body must be a JSON object"

    if required_fields:
        missing_fields = [field for field in required_fields if field not in data or data[field] is None]
        if missing_fields:
            return False, f"Missing required fields: {', '.join(missing_fields)}"

    return True, None


def create_error_response(
    error_type: str,
    message: str,
    status_code: int,
    details: Optional[Dict[str, Any]] = None
) -> Tuple[Response, int]:
    """
    エラーレスポンスを作成

    Returns:
        (JSON レスポンス, ステータスコード) のタプル
    """
    response_body = {
        "error": error_type,
        "message": message,
        "status_code": status_code
    }
    if details:
        response_body["details"] = details

    return jsonify(response_body), status_code


def _status_for(error: PipelineError) -> int:
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, AuthError):
        return 401
    if isinstance(error, ProviderError) and error.status_code == 404:
        return 404
    return 502


def _json_body(required_fields: Optional[list] = None) -> Dict[str, Any]:
    data = request.get_json(silent=True)
    is_valid, error_message = validate_json_request(data, required_fields)
    if not is_valid:
        raise ValidationError(error_message)
    return data


def _number(data: Dict[str, Any], key: str, cast=int) -> Any:
    value = data.get(key)
    if value is None or value == "":
        return None
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be a number: {value!r}")


def create_app(config: Optional[Config] = None, tracker: Optional[ProgressTracker] = None) -> Flask:
    """
    Flask アプリケーションを作成

    Args:
        config: パイプライン設定（None の場合は環境変数から読み込み）
        tracker: 進捗トラッカー（None の場合は作成して掃除スレッドを開始）

    Returns:
        設定済みの Flask アプリケーション
    """
    app = Flask(__name__)

    if config is None:
        config = Config.from_env()

    app.config["PIPELINE_CONFIG"] = config

    configure_structlog(config.log_level)

    logger = get_logger(__name__)
    logger.info(
        "application_initialized",
        log_level=config.log_level,
        output_dir=config.output_dir
    )

    if tracker is None:
        tracker = ProgressTracker(ttl=config.progress_ttl)
        tracker.start()
    app.config["PROGRESS_TRACKER"] = tracker

    # ==========================================================================
    # エラーハンドラー (Error Handlers)
    # ==========================================================================

    @app.errorhandler(404)
    def handle_not_found(error):
        logger.warning("not_found_error", path=request.path, method=request.method)
        return create_error_response("not_found", "Not Found", 404)

    @app.errorhandler(405)
    def handle_method_not_allowed(error):
        logger.warning(
            "method_not_allowed_error",
            path=request.path,
            method=request.method
        )
        return create_error_response("method_not_allowed", "Method Not Allowed", 405)

    @app.errorhandler(PipelineError)
    def handle_pipeline_error(error):
        status_code = _status_for(error)
        logger.error(
            "pipeline_error",
            error_type=error.error_type,
            error_message=error.message,
            details=error.details,
            status_code=status_code,
            path=request.path,
            method=request.method
        )
        return create_error_response(
            error_type=error.error_type,
            message=error.message,
            status_code=status_code,
            details=error.details
        )

    @app.errorhandler(Exception)
    def handle_generic_exception(error):
        logger.error(
            "unhandled_exception",
            error_type=type(error).__name__,
            error_message=str(error),
            path=request.path,
            method=request.method,
            stack_trace=traceback.format_exc(),
            exc_info=True
        )
        return create_error_response(
            error_type="internal_error",
            message="An unexpected error occurred",
            status_code=500
        )

    # ==========================================================================
    # エンドポイント (Endpoints)
    # ==========================================================================

    @app.route("/health", methods=["GET"])
    def health_check():
        logger.debug("health_check_requested")
        return jsonify({"status": "healthy"}), 200

    @app.route("/pipeline/validate", methods=["GET"])
    def validate_configuration():
        """
        各ステージの認証情報が設定されているかを返す
        """
        stages = config.stage_status()
        configured = [s for s in stages if s["configured"]]
        all_configured = len(configured) == len(stages)
        return jsonify({
            "success": all_configured,
            "message": (
                "All API keys are configured correctly" if all_configured
                else f"Missing API keys for {len(stages) - len(configured)} stage(s)"
            ),
            "stages": stages,
            "summary": {
                "total_stages": len(stages),
                "configured_stages": len(configured),
                "missing_stages": len(stages) - len(configured),
                "ready_to_run": all_configured,
            },
        }), 200

    @app.route("/pipeline/stage1", methods=["POST"])
    def fetch_calls_stage():
        """
        ステージ1: 通話取得

        Request Body (JSON):
            - startDate, endDate: 日付範囲 (必須)
            - clientId, clientSecret: Net2Phone 認証情報
            - baseUrl, tokenEndpoint, callsEndpoint: API 設定
            - pageSize, minDuration: 取得設定
        """
        data = _json_body(["startDate", "endDate"])
        logger.debug("stage1_request_received", start_date=data.get("startDate"), end_date=data.get("endDate"))

        result = run_fetch_stage(
            config,
            data.get("startDate"),
            data.get("endDate"),
            client_id=data.get("clientId"),
            client_secret=data.get("clientSecret"),
            base_url=data.get("baseUrl"),
            token_endpoint=data.get("tokenEndpoint"),
            calls_endpoint=data.get("callsEndpoint"),
            page_size=_number(data, "pageSize"),
            min_duration=_number(data, "minDuration")
        )

        logger.info("stage1_completed", total_calls=result["total_calls"])
        return jsonify(result), 200

    @app.route("/pipeline/stage2", methods=["POST"])
    def download_audio_stage():
        """
        ステージ2: 音声ダウンロード

        Request Body (JSON):
            - calls: 通話レコードのリスト (必須)
            - clientId, clientSecret, baseUrl: Net2Phone 設定
            - outputDir, minDuration, batchSize, batchDelay: ダウンロード設定
        """
        data = _json_body()
        calls = data.get("calls")
        if not isinstance(calls, list):
            raise ValidationError("Calls array is required")

        result = run_download_stage(
            config,
            calls,
            client_id=data.get("clientId"),
            client_secret=data.get("clientSecret"),
            base_url=data.get("baseUrl"),
            output_dir=data.get("outputDir"),
            min_duration=_number(data, "minDuration"),
            batch_size=_number(data, "batchSize"),
            batch_delay=_number(data, "batchDelay", float)
        )

        logger.info("stage2_completed", **result["summary"])
        return jsonify(result), 200

    @app.route("/pipeline/stage3", methods=["POST"])
    def transcribe_audio_stage():
        """
        ステージ3: 文字起こし

        Request Body (JSON):
            - audioFiles: {"filename": ...} のリスト (必須)
            - apiKey: AssemblyAI API キー
            - concurrentLimit: 同時実行数
            - sessionId: 進捗セッションID (省略時は自動生成)
        """
        data = _json_body()
        audio_files = data.get("audioFiles")
        if not isinstance(audio_files, list) or not audio_files:
            raise ValidationError("No audio files provided for transcription")

        result = run_transcription_stage(
            config,
            tracker,
            audio_files,
            api_key=data.get("apiKey"),
            concurrency_limit=_number(data, "concurrentLimit"),
            session_id=data.get("sessionId") or None
        )

        logger.info(
            "stage3_completed",
            session_id=result["session_id"],
            successful=result["successful"],
            failed=result["failed"]
        )
        return jsonify(result), 200

    @app.route("/pipeline/stage3/progress", methods=["GET"])
    def transcription_progress():
        """
        文字起こし進捗の Server-Sent Events ストリーム

        Query Parameters:
            - sessionId: セッションID (必須)
        """
        session_id = request.args.get("sessionId")
        if not session_id:
            raise ValidationError("Session ID required")

        def generate():
            for events in iter_new_events(tracker, session_id):
                payload = json.dumps([event.to_dict() for event in events])
                yield f"data: {payload}\n\n"

        return Response(
            stream_with_context(generate()),
            mimetype="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"}
        )

    logger.info(
        "application_ready",
        endpoints=[
            "/health",
            "/pipeline/validate",
            "/pipeline/stage1",
            "/pipeline/stage2",
            "/pipeline/stage3",
            "/pipeline/stage3/progress",
        ]
    )

    return app
