"""
通話取得モジュール (Call Fetcher Module)

日付範囲を UTC の1日単位に分解し、通話ログ API をページ送りしながら
通話レコードを取得します。
"""

import time
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Union

import requests

from .errors import NetworkError, PipelineError, ProviderError, ValidationError
from .logging_config import get_logger
from .models import CallRecord, DayResult, FetchResult
from .raw_calls import extract_relevant_data
from .token_cache import TokenCache, call_with_token_retry

DateLike = Union[str, date, datetime]

CALL_LOG_ACCEPT = "application/vnd.integrate.v1.10.0+json"


def parse_date(value: DateLike) -> date:
    """
    日付を UTC の date に変換

    Args:
        value: "YYYY-MM-DD"、ISO-8601 日時文字列、date または datetime

    Returns:
        UTC の日付

    Raises:
        ValidationError: 解析できない場合
    """
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Invalid date: {value!r}")

    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValidationError(f"Invalid date: {value!r}")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.date()


def date_range(start: date, end: date) -> List[date]:
    """開始日から終了日まで（両端を含む）の日付リスト"""
    days = []
    current = start
    while current <= end:
        days.append(current)
        current += timedelta(days=1)
    return days


def _iso_utc(day: date) -> str:
    return datetime(day.year, day.month, day.day, tzinfo=timezone.utc).strftime(
        "%Y-%m-%dT%H:%M:%S.000Z"
    )


def deduplicate_calls(calls: List[CallRecord]) -> List[CallRecord]:
    """
    call_id で重複を排除

    同じ call_id が複数ある場合、発信者名と録音 URL の両方を持つ
    レコードが後から現れたときだけ置き換え、それ以外は最初のものを残します。
    出力の順序は最初に現れた位置に従います。

    Args:
        calls: 通話レコードのリスト

    Returns:
        重複排除後の通話レコードのリスト
    """
    by_id: Dict[str, CallRecord] = {}
    for call in calls:
        key = call.call_id
        has_name_and_recording = bool(call.from_name.strip() and call.recording_url.strip())
        if key not in by_id or has_name_and_recording:
            by_id[key] = call
    return list(by_id.values())


class CallFetcher:
    """
    通話ログ API からの通話取得を担当するクラス

    Attributes:
        token_cache: トークンキャッシュ
        calls_url: 通話ログエンドポイントの URL
        session: HTTP セッション
    """

    DEFAULT_PAGE_SIZE = 500
    DEFAULT_MIN_DURATION = 15
    DEFAULT_DAY_DELAY = 1.0
    MAX_PAGES_PER_DAY = 1000

    def __init__(
        self,
        token_cache: TokenCache,
        base_url: str,
        calls_endpoint: str = "/v1/calls",
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        timeout: int = 60
    ):
        self.token_cache = token_cache
        self.calls_url = base_url.rstrip("/") + calls_endpoint
        self.session = session or token_cache.session
        self.sleep = sleep
        self.timeout = timeout
        self.logger = get_logger(__name__)

    def get_call_logs(
        self,
        day: date,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
        min_duration: int = DEFAULT_MIN_DURATION
    ) -> Dict[str, Any]:
        """
        1日分の通話ログを1ページ取得

        Args:
            day: 対象日 (UTC)
            page: ページ番号 (1から)
            page_size: 1ページあたりの件数
            min_duration: 最小通話時間（秒）

        Returns:
            {"result": [...], "count": int, "next": Optional[str]}

        Raises:
            AuthError: 認証に失敗した場合
            NetworkError: 通信に失敗した場合
            ProviderError: API が 2xx 以外を返した場合
        """
        params = {
            "start_date": _iso_utc(day),
            "end_date": _iso_utc(day + timedelta(days=1)),
            "page_size": str(page_size),
            "min_duration": str(min_duration),
        }
        if page > 1:
            params["page"] = str(page)

        def request(token: str) -> requests.Response:
            return self.session.get(
                self.calls_url,
                params=params,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Accept": CALL_LOG_ACCEPT,
                    "Content-Type": "application/json; charset=utf-8",
                },
                timeout=self.timeout
            )

        try:
            response = call_with_token_retry(self.token_cache, request)
        except requests.RequestException as e:
            raise NetworkError(f"Failed to fetch call logs: {e}")

        if not response.ok:
            raise ProviderError(
                f"Failed to fetch call logs: {response.reason}",
                status_code=response.status_code
            )

        try:
            data = response.json()
        except ValueError:
            raise ProviderError("Failed to fetch call logs: invalid JSON response")

        if not isinstance(data, dict):
            raise ProviderError("Failed to fetch call logs: unexpected response shape")
        return data

    def fetch_day(
        self,
        day: date,
        page_size: int = DEFAULT_PAGE_SIZE,
        min_duration: int = DEFAULT_MIN_DURATION
    ) -> List[CallRecord]:
        """
        1日分の通話を全ページ取得

        "next" がない、またはページが page_size より短い時点で終了します。
        重複排除の後に最小通話時間フィルタを適用します。

        Args:
            day: 対象日 (UTC)
            page_size: 1ページあたりの件数
            min_duration: 最小通話時間（秒）

        Returns:
            その日の通話レコード（ページ順、ページ内はプロバイダー順）
        """
        day_calls: List[CallRecord] = []
        page = 1

        while True:
            data = self.get_call_logs(day, page, page_size, min_duration)
            raw_calls = data.get("result") or []
            day_calls.extend(extract_relevant_data(raw_calls))

            self.logger.debug(
                "call_logs_page_fetched",
                date=day.isoformat(),
                page=page,
                page_calls=len(raw_calls),
                has_next=bool(data.get("next"))
            )

            if not data.get("next") or len(raw_calls) < page_size:
                break
            if page >= self.MAX_PAGES_PER_DAY:
                self.logger.warning(
                    "call_logs_page_limit_reached",
                    date=day.isoformat(),
                    pages=page
                )
                break
            page += 1

        deduped = deduplicate_calls(day_calls)
        return [call for call in deduped if call.duration >= min_duration]

    def fetch_calls(
        self,
        start_date: DateLike,
        end_date: DateLike,
        min_duration: int = DEFAULT_MIN_DURATION,
        page_size: int = DEFAULT_PAGE_SIZE,
        day_delay: float = DEFAULT_DAY_DELAY
    ) -> FetchResult:
        """
        日付範囲の通話を取得

        日ごとの失敗は通話0件のエラーエントリとして記録し、
        範囲全体の処理は中断しません。日と日の間には day_delay 秒待機します。

        Args:
            start_date: 開始日（含む）
            end_date: 終了日（含む）
            min_duration: 最小通話時間（秒）
            page_size: 1ページあたりの件数
            day_delay: 日ごとの待機時間（秒）

        Returns:
            FetchResult

        Raises:
            ValidationError: 日付範囲が無効な場合
        """
        start = parse_date(start_date)
        end = parse_date(end_date)
        if start > end:
            raise ValidationError(
                "Invalid date range",
                details={"start_date": start.isoformat(), "end_date": end.isoformat()}
            )
        if page_size <= 0:
            raise ValidationError(f"page_size must be positive: {page_size}")

        days = date_range(start, end)
        all_calls: List[CallRecord] = []
        daily_results: List[DayResult] = []

        self.logger.info(
            "call_fetch_started",
            start_date=start.isoformat(),
            end_date=end.isoformat(),
            days=len(days),
            page_size=page_size,
            min_duration=min_duration
        )

        for index, day in enumerate(days):
            try:
                day_calls = self.fetch_day(day, page_size, min_duration)
            except PipelineError as e:
                self.logger.warning(
                    "call_fetch_day_failed",
                    date=day.isoformat(),
                    error_type=e.error_type,
                    error_message=e.message
                )
                daily_results.append(DayResult(
                    date=day.isoformat(),
                    status="error",
                    error=e.message
                ))
            else:
                all_calls.extend(day_calls)
                daily_results.append(DayResult(date=day.isoformat(), calls=day_calls))
                self.logger.info(
                    "call_fetch_day_completed",
                    date=day.isoformat(),
                    call_count=len(day_calls)
                )

            if index < len(days) - 1 and day_delay > 0:
                self.sleep(day_delay)

        # 日をまたいだ重複も排除する
        all_calls = deduplicate_calls(all_calls)

        self.logger.info(
            "call_fetch_completed",
            total_calls=len(all_calls),
            failed_days=sum(1 for r in daily_results if r.status == "error")
        )

        return FetchResult(
            start_date=start.isoformat(),
            end_date=end.isoformat(),
            calls=all_calls,
            daily_results=daily_results
        )
