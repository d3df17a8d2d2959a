"""
生通話データ正規化モジュール (Raw Call Normalization Module)

通話ログ API の生データを CallRecord に変換します。

プロバイダーのペイロードは "from" / "to" / "recording" の入れ子構造が
レスポンスによって異なるため、構造を調べて既知の形のいずれかに分類し、
形ごとの純粋な正規化関数で変換します。

既知の形:
    - nested: "from" / "to" がオブジェクト、"recording" が {"url": ...}
      または "recordings" が [{"url": ...}]
    - flat: "from_number", "from_name", "to_number", "recording_url" などが最上位
    - scalar: "from" / "to" が電話番号の文字列、"recording" が URL の文字列
"""

import re
from typing import Any, Callable, Dict, Iterable, List, Optional

from .models import CallRecord

SHAPE_NESTED = "nested"
SHAPE_FLAT = "flat"
SHAPE_SCALAR = "scalar"

# 着信側のルーティング / ユーザー識別子として扱うキー
TO_LEG_ID_KEYS = ("user_id", "routing_id", "user", "extension")

_FLAT_KEYS = ("from_number", "from_name", "from_username", "to_number", "recording_url")
_SIP_NUMERIC_PREFIX = re.compile(r"^(\d+)@")


def detect_shape(raw: Dict[str, Any]) -> str:
    """
    生データの形を判定

    Args:
        raw: 通話ログ API の1エントリ

    Returns:
        SHAPE_NESTED, SHAPE_FLAT, SHAPE_SCALAR のいずれか
    """
    if any(isinstance(raw.get(key), dict) for key in ("from", "to", "recording")):
        return SHAPE_NESTED
    if isinstance(raw.get("recordings"), list):
        return SHAPE_NESTED
    if any(key in raw for key in _FLAT_KEYS):
        return SHAPE_FLAT
    if any(isinstance(raw.get(key), str) for key in ("from", "to", "recording")):
        return SHAPE_SCALAR
    return SHAPE_NESTED


def derive_broker_id(
    to_leg_id: Optional[str],
    from_username: str,
    from_name: str
) -> str:
    """
    ブローカーIDを推定

    優先順位:
        1. 着信側の明示的なルーティング / ユーザー識別子
        2. SIP 形式のユーザー名 ("12345@domain") の "@" より前の数字
        3. 発信者表示名の先頭3文字（小文字）

    Args:
        to_leg_id: 着信側の識別子
        from_username: 発信者ユーザー名
        from_name: 発信者表示名

    Returns:
        ブローカーID（推定できない場合は空文字）
    """
    if to_leg_id:
        return to_leg_id

    match = _SIP_NUMERIC_PREFIX.match(from_username or "")
    if match:
        return match.group(1)

    if from_name:
        return from_name.lower()[:3]

    return ""


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def _duration(value: Any) -> int:
    try:
        return max(0, int(float(value or 0)))
    except (TypeError, ValueError):
        return 0


def _to_leg_id(leg: Dict[str, Any], prefix: str = "") -> Optional[str]:
    for key in TO_LEG_ID_KEYS:
        value = leg.get(prefix + key)
        if isinstance(value, (str, int)) and _text(value).strip():
            return _text(value).strip()
    return None


def _build_record(
    raw: Dict[str, Any],
    from_number: str,
    to_number: str,
    from_username: str,
    from_name: str,
    recording_url: str,
    to_leg_id: Optional[str]
) -> CallRecord:
    start_time = _text(raw.get("start_time"))
    # 表示名がない場合はユーザー名で代用
    name = from_name or from_username
    return CallRecord(
        call_id=_text(raw.get("call_id")),
        from_number=from_number,
        to_number=to_number,
        from_username=from_username,
        from_name=name,
        start_time=start_time,
        duration=_duration(raw.get("duration")),
        recording_url=recording_url,
        broker_id=derive_broker_id(to_leg_id, from_username, name),
        date=start_time.split("T")[0] if start_time else "",
    )


def _normalize_nested(raw: Dict[str, Any]) -> CallRecord:
    from_leg = raw.get("from") if isinstance(raw.get("from"), dict) else {}
    to_leg = raw.get("to") if isinstance(raw.get("to"), dict) else {}

    recording = raw.get("recording")
    if isinstance(recording, dict):
        recording_url = _text(recording.get("url"))
    elif isinstance(recording, str):
        recording_url = recording
    else:
        recordings = raw.get("recordings")
        first = recordings[0] if isinstance(recordings, list) and recordings else {}
        recording_url = _text(first.get("url")) if isinstance(first, dict) else ""

    # 片側だけ文字列で届く場合がある
    from_number = _text(from_leg.get("number"))
    if not from_number and isinstance(raw.get("from"), str):
        from_number = raw["from"]
    to_number = _text(to_leg.get("number"))
    if not to_number and isinstance(raw.get("to"), str):
        to_number = raw["to"]

    return _build_record(
        raw,
        from_number=from_number,
        to_number=to_number,
        from_username=_text(from_leg.get("username")),
        from_name=_text(from_leg.get("name")),
        recording_url=recording_url,
        to_leg_id=_to_leg_id(to_leg),
    )


def _normalize_flat(raw: Dict[str, Any]) -> CallRecord:
    return _build_record(
        raw,
        from_number=_text(raw.get("from_number")),
        to_number=_text(raw.get("to_number")),
        from_username=_text(raw.get("from_username")),
        from_name=_text(raw.get("from_name")),
        recording_url=_text(raw.get("recording_url")),
        to_leg_id=_to_leg_id(raw, prefix="to_"),
    )


def _normalize_scalar(raw: Dict[str, Any]) -> CallRecord:
    recording = raw.get("recording")
    return _build_record(
        raw,
        from_number=_text(raw.get("from")),
        to_number=_text(raw.get("to")),
        from_username="",
        from_name="",
        recording_url=recording if isinstance(recording, str) else "",
        to_leg_id=None,
    )


_NORMALIZERS: Dict[str, Callable[[Dict[str, Any]], CallRecord]] = {
    SHAPE_NESTED: _normalize_nested,
    SHAPE_FLAT: _normalize_flat,
    SHAPE_SCALAR: _normalize_scalar,
}


def normalize_call(raw: Dict[str, Any]) -> CallRecord:
    """
    生データ1件を CallRecord に変換

    Args:
        raw: 通話ログ API の1エントリ

    Returns:
        正規化された CallRecord
    """
    return _NORMALIZERS[detect_shape(raw)](raw)


def extract_relevant_data(raw_calls: Iterable[Dict[str, Any]]) -> List[CallRecord]:
    """ページ内の生データをプロバイダーの順序のまま変換"""
    return [normalize_call(raw) for raw in raw_calls if isinstance(raw, dict)]
