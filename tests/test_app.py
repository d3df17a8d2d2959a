"""
Flask アプリケーションのテスト (Flask Application Tests)

HTTP エンドポイント、エラーレスポンス、構造化ロギングをテストします。
パイプラインのステージ関数はモックに置き換えます。
"""

import json
import pytest
from unittest.mock import patch

from call_pipeline.app import create_app, validate_json_request
from call_pipeline.errors import AuthError, ProviderError, ValidationError
from call_pipeline.logging_config import configure_structlog, get_logger
from call_pipeline.models import ProgressEvent
from call_pipeline.progress import ProgressTracker

from conftest import make_config


@pytest.fixture
def tracker():
    return ProgressTracker()


@pytest.fixture
def app(test_config, tracker):
    """テスト用の Flask アプリケーションを作成"""
    app = create_app(test_config, tracker=tracker)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    """テスト用のクライアントを作成"""
    return app.test_client()


class TestFlaskAppCreation:
    """Flask アプリケーション作成のテスト"""

    def test_create_app_returns_flask_instance(self, test_config, tracker):
        """create_app が Flask インスタンスを返すことを確認"""
        from flask import Flask
        app = create_app(test_config, tracker=tracker)
        assert isinstance(app, Flask)

    def test_create_app_stores_config(self, test_config, tracker):
        """create_app が設定とトラッカーを保存することを確認"""
        app = create_app(test_config, tracker=tracker)
        assert app.config["PIPELINE_CONFIG"] == test_config
        assert app.config["PROGRESS_TRACKER"] is tracker

    def test_create_app_starts_tracker_when_not_given(self, test_config):
        """トラッカーを渡さない場合は作成して掃除スレッドを開始する"""
        app = create_app(test_config)
        tracker = app.config["PROGRESS_TRACKER"]
        try:
            assert isinstance(tracker, ProgressTracker)
            assert tracker.ttl == test_config.progress_ttl
        finally:
            tracker.stop()


class TestHealthCheckEndpoint:
    """ヘルスチェックエンドポイントのテスト"""

    def test_health_check_returns_healthy_status(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.content_type == "application/json"
        assert json.loads(response.data)["status"] == "healthy"


class TestErrorHandlers:
    """エラーハンドラーのテスト"""

    def test_unknown_route_returns_json_404(self, client):
        response = client.get("/nope")
        data = json.loads(response.data)
        assert response.status_code == 404
        assert data["error"] == "not_found"

    def test_wrong_method_returns_json_405(self, client):
        response = client.get("/pipeline/stage1")
        assert response.status_code == 405
        assert json.loads(response.data)["error"] == "method_not_allowed"

    @pytest.mark.parametrize("error, status_code", [
        (ValidationError("bad input"), 400),
        (AuthError("Failed to get access token: Unauthorized"), 401),
        (ProviderError("missing", status_code=404), 404),
        (ProviderError("Failed to fetch call logs: Server Error", status_code=500), 502),
    ])
    def test_pipeline_errors_map_to_status_codes(self, client, error, status_code):
        with patch("call_pipeline.app.run_fetch_stage", side_effect=error):
            response = client.post("/pipeline/stage1", json={
                "startDate": "2025-01-01", "endDate": "2025-01-01"
            })

        data = json.loads(response.data)
        assert response.status_code == status_code
        assert data["error"] == error.error_type
        assert data["message"] == error.message

    def test_unexpected_exception_returns_500(self, client):
        with patch("call_pipeline.app.run_fetch_stage", side_effect=RuntimeError("boom")):
            response = client.post("/pipeline/stage1", json={
                "startDate": "2025-01-01", "endDate": "2025-01-01"
            })

        data = json.loads(response.data)
        assert response.status_code == 500
        assert data["error"] == "internal_error"
        assert "boom" not in data["message"]


class TestValidateEndpoint:
    """/pipeline/validate のテスト"""

    def test_all_configured(self, client):
        response = client.get("/pipeline/validate")
        data = json.loads(response.data)
        assert response.status_code == 200
        assert data["success"] is True
        assert data["summary"]["configured_stages"] == 3

    def test_reports_missing_credentials(self, tracker):
        config = make_config(assemblyai_api_key=None)
        client = create_app(config, tracker=tracker).test_client()

        data = json.loads(client.get("/pipeline/validate").data)

        assert data["success"] is False
        assert data["summary"]["missing_stages"] == 1
        stage3 = [s for s in data["stages"] if s["stage"] == 3][0]
        assert stage3["missing"] == ["ASSEMBLYAI_API_KEY"]


class TestStage1Endpoint:
    """/pipeline/stage1 のテスト"""

    def test_passes_request_values_to_stage(self, client, test_config):
        result = {
            "success": True,
            "total_calls": 0,
            "daily_results": [],
            "calls": [],
            "date_range": {"start_date": "2025-01-01", "end_date": "2025-01-02"},
        }
        with patch("call_pipeline.app.run_fetch_stage", return_value=result) as stage:
            response = client.post("/pipeline/stage1", json={
                "startDate": "2025-01-01",
                "endDate": "2025-01-02",
                "clientId": "req-id",
                "clientSecret": "req-secret",
                "pageSize": "100",
            })

        assert response.status_code == 200
        assert json.loads(response.data) == result
        args, kwargs = stage.call_args
        assert args == (test_config, "2025-01-01", "2025-01-02")
        assert kwargs["client_id"] == "req-id"
        assert kwargs["page_size"] == 100
        assert kwargs["min_duration"] is None

    def test_invalid_json_returns_400(self, client):
        response = client.post("/pipeline/stage1", data="not json", content_type="application/json")
        assert response.status_code == 400
        assert json.loads(response.data)["error"] == "validation_error"

    def test_missing_dates_returns_400(self, client):
        with patch("call_pipeline.app.run_fetch_stage") as stage:
            response = client.post("/pipeline/stage1", json={"startDate": "2025-01-01"})

        data = json.loads(response.data)
        assert response.status_code == 400
        assert data["message"] == "Missing required fields: endDate"
        stage.assert_not_called()

    def test_non_numeric_page_size_returns_400(self, client):
        response = client.post("/pipeline/stage1", json={
            "startDate": "2025-01-01", "endDate": "2025-01-01", "pageSize": "lots"
        })
        assert response.status_code == 400


class TestStage2Endpoint:
    """/pipeline/stage2 のテスト"""

    def test_missing_calls_returns_400(self, client):
        response = client.post("/pipeline/stage2", json={})
        data = json.loads(response.data)
        assert response.status_code == 400
        assert data["message"] == "Calls array is required"

    def test_returns_download_summary(self, client):
        result = {
            "message": "Audio download completed",
            "stats": {"total_calls": 1},
            "summary": {"attempted": 1, "successful": 1, "failed": 0, "success_rate": 100},
            "downloads": [],
            "failures": [],
        }
        with patch("call_pipeline.app.run_download_stage", return_value=result) as stage:
            response = client.post("/pipeline/stage2", json={
                "calls": [{"call_id": "1"}], "batchDelay": "2.5"
            })

        assert response.status_code == 200
        assert json.loads(response.data)["summary"]["success_rate"] == 100
        assert stage.call_args.kwargs["batch_delay"] == 2.5


class TestStage3Endpoint:
    """/pipeline/stage3 のテスト"""

    def test_missing_audio_files_returns_400(self, client):
        response = client.post("/pipeline/stage3", json={"audioFiles": []})
        assert response.status_code == 400

    def test_unsafe_filename_returns_400(self, client):
        response = client.post("/pipeline/stage3", json={
            "audioFiles": [{"filename": "../../etc/passwd.wav"}]
        })
        data = json.loads(response.data)
        assert response.status_code == 400
        assert "path traversal" in data["message"]

    def test_runs_stage_with_tracker(self, client, test_config, tracker):
        result = {"session_id": "s1", "successful": 1, "failed": 0}
        with patch("call_pipeline.app.run_transcription_stage", return_value=result) as stage:
            response = client.post("/pipeline/stage3", json={
                "audioFiles": [{"filename": "joh_1.wav"}],
                "apiKey": "override",
                "concurrentLimit": 2,
            })

        assert response.status_code == 200
        args, kwargs = stage.call_args
        assert args == (test_config, tracker, [{"filename": "joh_1.wav"}])
        assert kwargs == {"api_key": "override", "concurrency_limit": 2, "session_id": None}

    def test_uses_client_chosen_session_id(self, client):
        """クライアントが指定したセッションIDで進捗を記録する"""
        result = {"session_id": "client-chosen", "successful": 1, "failed": 0}
        with patch("call_pipeline.app.run_transcription_stage", return_value=result) as stage:
            response = client.post("/pipeline/stage3", json={
                "audioFiles": [{"filename": "joh_1.wav"}],
                "sessionId": "client-chosen",
            })

        assert response.status_code == 200
        assert stage.call_args.kwargs["session_id"] == "client-chosen"
        assert json.loads(response.data)["session_id"] == "client-chosen"

    def test_session_id_reaches_tracker(self, tracker, tmp_path):
        """指定したセッションIDのイベントが進捗ストアに残る"""
        config = make_config(output_dir=str(tmp_path))
        audio_dir = tmp_path / "audio"
        audio_dir.mkdir()
        (tmp_path / "transcripts").mkdir()
        (tmp_path / "transcripts" / "joh_1.txt").write_text("done")
        client = create_app(config, tracker=tracker).test_client()

        response = client.post("/pipeline/stage3", json={
            "audioFiles": [{"filename": "joh_1.wav"}],
            "sessionId": "client-chosen",
        })

        assert response.status_code == 200
        assert json.loads(response.data)["session_id"] == "client-chosen"
        assert tracker.has_session("client-chosen")


class TestProgressEndpoint:
    """/pipeline/stage3/progress のテスト"""

    def test_requires_session_id(self, client):
        response = client.get("/pipeline/stage3/progress")
        assert response.status_code == 400
        assert json.loads(response.data)["message"] == "Session ID required"

    def test_streams_events_as_sse(self, client):
        events = [[ProgressEvent("1", "joh", "joh_1.wav", "transcribing", 50.0)],
                  [ProgressEvent("2", "joh", "joh_2.wav", "completed", 100.0)]]
        with patch("call_pipeline.app.iter_new_events", return_value=iter(events)):
            response = client.get("/pipeline/stage3/progress?sessionId=s1")
            body = response.get_data(as_text=True)

        assert response.status_code == 200
        assert response.mimetype == "text/event-stream"
        frames = [f for f in body.split("\n\n") if f]
        assert len(frames) == 2
        first = json.loads(frames[0][len("data: "):])
        assert first == [{
            "call_id": "1",
            "broker_id": "joh",
            "filename": "joh_1.wav",
            "status": "transcribing",
            "progress": 50.0,
        }]

    def test_unknown_session_ends_stream(self, client):
        response = client.get("/pipeline/stage3/progress?sessionId=missing")
        assert response.status_code == 200
        assert response.get_data(as_text=True) == ""


class TestValidateJsonRequest:
    """validate_json_request() のテスト"""

    def test_rejects_none_and_non_objects(self):
        assert validate_json_request(None)[0] is False
        assert validate_json_request([1, 2])[0] is False

    def test_reports_missing_fields(self):
        is_valid, message = validate_json_request({"a": 1}, ["a", "b"])
        assert is_valid is False
        assert message == "Missing required fields: b"


class TestStructuredLogging:
    """構造化ロギングのテスト"""

    def test_configure_structlog_accepts_valid_log_levels(self):
        for level in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            configure_structlog(level)

    def test_get_logger_returns_bound_logger(self):
        configure_structlog("INFO")
        logger = get_logger("test")
        assert hasattr(logger, "info")
        assert hasattr(logger, "warning")

    def test_structlog_output_is_json_with_standard_fields(self, capsys):
        """
        JSON 出力が timestamp, level, event とカスタムフィールドを含むことを確認
        """
        import structlog

        configure_structlog("INFO")
        logger = structlog.get_logger("test_json_output")
        logger.info("call_fetch_day_completed", date="2025-01-01", call_count=3)

        captured = capsys.readouterr()
        if captured.out.strip():
            log_output = json.loads(captured.out.strip().splitlines()[-1])
            assert log_output["event"] == "call_fetch_day_completed"
            assert log_output["level"] == "info"
            assert "timestamp" in log_output
            assert log_output["call_count"] == 3
