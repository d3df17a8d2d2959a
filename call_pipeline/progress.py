"""
進捗トラッカーモジュール (Progress Tracker Module)

セッションIDごとに進捗イベントを追記専用のリストとして保持します。
バッチ処理の終了後、一定時間 (TTL) が経過したセッションは
バックグラウンドの掃除スレッドが1つでまとめて削除します。
"""

import threading
import time
import uuid
from typing import Callable, Dict, Iterator, List, Optional

from .logging_config import get_logger
from .models import ProgressEvent


class ProgressTracker:
    """
    セッション単位の進捗ストア

    すべての操作は1つのロックで保護されるため、複数のワーカーが同時に
    追記してもイベントは失われません。

    Attributes:
        ttl: 削除予約からセッションを削除するまでの時間（秒）
    """

    DEFAULT_TTL = 60.0
    DEFAULT_SWEEP_INTERVAL = 5.0

    def __init__(
        self,
        ttl: float = DEFAULT_TTL,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL
    ):
        self.ttl = ttl
        self.clock = clock
        self.sweep_interval = sweep_interval
        self._sessions: Dict[str, List[ProgressEvent]] = {}
        self._expires_at: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.logger = get_logger(__name__)

    def create_session(self, session_id: Optional[str] = None) -> str:
        """新しいセッションを作成してIDを返す"""
        session_id = session_id or uuid.uuid4().hex
        with self._lock:
            self._sessions.setdefault(session_id, [])
            self._expires_at.pop(session_id, None)
        return session_id

    def append(self, session_id: str, event: ProgressEvent) -> bool:
        """
        イベントを追記

        Returns:
            セッションが存在しない場合は False
        """
        with self._lock:
            events = self._sessions.get(session_id)
            if events is None:
                return False
            events.append(event)
            return True

    def get_events(self, session_id: str, since: int = 0) -> Optional[List[ProgressEvent]]:
        """
        since 番目以降のイベントを取得

        Returns:
            イベントのリスト、セッションが存在しない場合は None
        """
        with self._lock:
            events = self._sessions.get(session_id)
            if events is None:
                return None
            return list(events[since:])

    def has_session(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def schedule_removal(self, session_id: str) -> None:
        """TTL 経過後に削除されるよう予約"""
        with self._lock:
            if session_id in self._sessions:
                self._expires_at[session_id] = self.clock() + self.ttl

    def remove(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)
            self._expires_at.pop(session_id, None)

    def evict_expired(self) -> List[str]:
        """期限切れのセッションを削除して、削除したIDを返す"""
        now = self.clock()
        with self._lock:
            expired = [sid for sid, at in self._expires_at.items() if at <= now]
            for session_id in expired:
                self._sessions.pop(session_id, None)
                del self._expires_at[session_id]

        if expired:
            self.logger.debug("progress_sessions_evicted", session_ids=expired)
        return expired

    def start(self) -> None:
        """掃除スレッドを開始"""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._sweep, name="progress-sweeper")
        self._thread.daemon = True
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.sweep_interval + 1)
            self._thread = None

    def _sweep(self) -> None:
        while not self._stop.wait(self.sweep_interval):
            self.evict_expired()


def iter_new_events(
    tracker: ProgressTracker,
    session_id: str,
    poll_interval: float = 1.0,
    stop_event: Optional[threading.Event] = None
) -> Iterator[List[ProgressEvent]]:
    """
    まだ送っていないイベントを一定間隔で取り出す

    セッションが削除されるか stop_event がセットされると終了します。

    Yields:
        新しいイベントのリスト（空のリストは返さない）
    """
    stop_event = stop_event or threading.Event()
    sent = 0

    while not stop_event.is_set():
        events = tracker.get_events(session_id, since=sent)
        if events is None:
            return
        if events:
            sent += len(events)
            yield events
        if stop_event.wait(poll_interval):
            return
