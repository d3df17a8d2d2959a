"""
トークンキャッシュモジュール (Token Cache Module)

クライアントクレデンシャル方式で取得したベアラートークンを
アカウントごとに1つだけ保持します。

401 を受け取った場合はトークンを無効化して1回だけ再取得し、
元のリクエストを1回だけ再試行します。
"""

import threading
from typing import Callable, Optional

import requests

from .errors import AuthError
from .logging_config import get_logger


class TokenCache:
    """
    ベアラートークンのキャッシュ

    最初の get_token() 呼び出しでトークンを取得し、インスタンスの
    存続期間中メモリに保持します。ロックにより同時に実行される
    トークン取得は常に1つだけで、他のスレッドはその結果を待って再利用します。

    Attributes:
        token_url: トークンエンドポイントの URL
        client_id: クライアントID
        client_secret: クライアントシークレット
        session: HTTP セッション
    """

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        session: Optional[requests.Session] = None,
        timeout: int = 30
    ):
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.session = session or requests.Session()
        self.timeout = timeout
        self._token: Optional[str] = None
        self._lock = threading.Lock()
        self.logger = get_logger(__name__)

    def get_token(self) -> str:
        """
        アクセストークンを取得

        キャッシュ済みであればそれを返し、なければトークンエンドポイントに
        問い合わせます。

        Returns:
            アクセストークン

        Raises:
            AuthError: トークンエンドポイントに到達できない、または 2xx 以外の場合
        """
        with self._lock:
            if self._token is None:
                self._token = self._fetch_token()
            return self._token

    def invalidate(self, stale_token: Optional[str] = None) -> None:
        """
        キャッシュ済みトークンを無効化

        stale_token が指定された場合、キャッシュがまだそのトークンを
        保持しているときだけ無効化します（他のスレッドが既に更新済みなら何もしない）。

        Args:
            stale_token: 401 を受けたトークン
        """
        with self._lock:
            if stale_token is None or self._token == stale_token:
                self._token = None

    def refresh(self, stale_token: Optional[str] = None) -> str:
        """古いトークンを無効化して新しいトークンを返す"""
        self.invalidate(stale_token)
        return self.get_token()

    def _fetch_token(self) -> str:
        self.logger.debug("access_token_requested", token_url=self.token_url)

        try:
            response = self.session.post(
                self.token_url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.timeout
            )
        except requests.RequestException as e:
            self.logger.error(
                "access_token_request_failed",
                token_url=self.token_url,
                error_message=str(e)
            )
            raise AuthError(f"Failed to get access token: {e}")

        if not response.ok:
            self.logger.error(
                "access_token_rejected",
                token_url=self.token_url,
                status_code=response.status_code,
                reason=response.reason
            )
            raise AuthError(
                f"Failed to get access token: {response.reason}",
                details={"status_code": response.status_code}
            )

        try:
            token = response.json().get("access_token")
        except ValueError:
            token = None

        if not token:
            raise AuthError("Failed to get access token: response has no access_token")

        self.logger.info("access_token_obtained", token_url=self.token_url)
        return token


def call_with_token_retry(
    token_cache: TokenCache,
    request_fn: Callable[[str], requests.Response],
    max_retries: int = 1
) -> requests.Response:
    """
    トークン付きリクエストを実行し、401 のときだけ有限回再試行する

    Args:
        token_cache: トークンキャッシュ
        request_fn: トークンを受け取りレスポンスを返す関数
        max_retries: 401 後の再試行回数 (デフォルト: 1)

    Returns:
        401 以外のレスポンス

    Raises:
        AuthError: 再試行後も 401 が返った場合、またはトークン取得に失敗した場合
    """
    logger = get_logger(__name__)

    token = token_cache.get_token()
    response = request_fn(token)
    retries = 0

    while response.status_code == 401:
        if retries >= max_retries:
            logger.error("authorization_failed_after_refresh", retries=retries)
            raise AuthError(
                f"Authorization failed after token refresh: {response.reason}",
                details={"status_code": 401}
            )
        retries += 1
        logger.info("access_token_expired", retry=retries)
        token = token_cache.refresh(token)
        response = request_fn(token)

    return response
