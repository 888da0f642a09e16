"""Time-series extraction from market-data tool results.

Tool results arrive either as CSV text or as a nested object keyed by a
"Time Series ..." label.  Both are normalized into the same
``{timestamp: {open, high, low, close, volume}}`` map before points are
built, so equivalent data yields identical candles.
"""

from __future__ import annotations

import ast
import csv
import io
import json
import logging
import math
import re
from datetime import datetime, timezone
from typing import Any

from tradechat.types import ChartPoint

_logger = logging.getLogger(__name__)

TIME_SERIES_TOOLS = frozenset({
    "TIME_SERIES_INTRADAY",
    "TIME_SERIES_DAILY",
    "TIME_SERIES_WEEKLY",
    "DIGITAL_CURRENCY_DAILY",
})

DEFAULT_POINTS = 50

_FIELDS = ("open", "high", "low", "close", "volume")
_PRICE_FIELDS = ("open", "high", "low", "close")
_SERIES_KEY_MARKERS = ("Time Series", "Technical Analysis", "Digital Currency")
_HEADER_KEYWORDS = ("timestamp", "date", "time", "open")
_TIME_COLUMNS = ("timestamp", "date", "time", "datetime")

_DATE_PREFIX = re.compile(r"^\d{4}-\d{2}-\d{2}")
_DATE_ANYWHERE = re.compile(r"\d{4}-\d{2}-\d{2}")
_FIELD_PREFIX = re.compile(r"^\d+[a-z]?\.\s*")
_DAY_PATTERNS = (
    re.compile(r"(?:last\s+)?(\d+)\s*(?:trading\s*)?days?\b"),
    re.compile(r"\bdays?\W*(\d+)"),
    re.compile(r"(\d+)\W*days?\b"),
)
_TIME_FORMATS = ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M", "%Y-%m-%d")

Series = dict[str, dict[str, float | None]]


# ---------------------------------------------------------------------------
# Hints
# ---------------------------------------------------------------------------

def _hint_texts(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, dict):
        return [t for v in value.values() for t in _hint_texts(v)]
    if isinstance(value, (list, tuple)):
        return [t for v in value for t in _hint_texts(v)]
    return []


def requested_days(hints: dict[str, Any] | None) -> int | None:
    """Parse a requested day count ("last 10 days", ``days: 10``) from hints."""
    if not hints:
        return None
    days = hints.get("days")
    if isinstance(days, int) and not isinstance(days, bool) and days > 0:
        return days
    if isinstance(days, str) and days.strip().isdigit() and int(days) > 0:
        return int(days)

    for text in _hint_texts(hints):
        lower = text.lower()
        for pattern in _DAY_PATTERNS:
            m = pattern.search(lower)
            if m and int(m.group(1)) > 0:
                return int(m.group(1))
    return None


# ---------------------------------------------------------------------------
# Format sniffing / normalization
# ---------------------------------------------------------------------------

def looks_like_csv(text: str) -> bool:
    """Structural sniff for delimited text."""
    stripped = text.strip()
    if not stripped or "," not in stripped or stripped[0] in "{[":
        return False
    lines = stripped.splitlines()
    first = lines[0].lower()
    if _DATE_PREFIX.match(stripped):
        return True
    if "timestamp" in first or "date" in first:
        return True
    return sum(1 for line in lines if _DATE_ANYWHERE.search(line)) > 1


def _to_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(str(value).strip().replace("_", ""))
    except ValueError:
        return None


def _is_header(row: list[str]) -> bool:
    if not row or _DATE_PREFIX.match(row[0].strip()):
        return False
    joined = ",".join(row).lower()
    return any(k in joined for k in _HEADER_KEYWORDS)


def csv_to_series(text: str) -> Series:
    """Parse CSV rows (time, open, high, low, close[, volume]) into a series map."""
    rows = [r for r in csv.reader(io.StringIO(text.strip())) if r and any(c.strip() for c in r)]
    if not rows:
        return {}

    columns = {name: i for i, name in enumerate(("time",) + _FIELDS)}
    if _is_header(rows[0]):
        header = [c.strip().lower() for c in rows.pop(0)]
        mapped: dict[str, int] = {}
        for i, name in enumerate(header):
            if name in _TIME_COLUMNS and "time" not in mapped:
                mapped["time"] = i
            elif name in _FIELDS and name not in mapped:
                mapped[name] = i
        if "time" in mapped:
            columns = mapped

    series: Series = {}
    for row in rows:
        ti = columns.get("time", 0)
        if ti >= len(row):
            continue
        fields: dict[str, float | None] = {}
        for name in _FIELDS:
            ci = columns.get(name)
            fields[name] = _to_float(row[ci]) if ci is not None and ci < len(row) else None
        series[row[ti].strip()] = fields
    return series


def _field_name(key: str) -> str | None:
    name = _FIELD_PREFIX.sub("", key.strip().lower())
    name = name.split("(")[0].strip()
    return name if name in _FIELDS else None


def _series_key(obj: dict[str, Any]) -> str | None:
    for key in obj:
        if any(marker in str(key) for marker in _SERIES_KEY_MARKERS):
            return key
    return None


def object_to_series(obj: dict[str, Any]) -> Series:
    """Normalize a nested "Time Series" object into a series map."""
    key = _series_key(obj)
    if key is None or not isinstance(obj[key], dict):
        return {}
    series: Series = {}
    for ts, raw_fields in obj[key].items():
        if not isinstance(raw_fields, dict):
            continue
        fields: dict[str, float | None] = {name: None for name in _FIELDS}
        for raw_key, value in raw_fields.items():
            name = _field_name(str(raw_key))
            if name and fields[name] is None:
                fields[name] = _to_float(value)
        series[str(ts)] = fields
    return series


def load_payload(raw: Any) -> Any:
    """Decode a tool result into CSV text, a dict, or *None*."""
    if isinstance(raw, (dict, list)):
        return raw
    if not isinstance(raw, str):
        return None
    text = raw.strip()
    if not text:
        return None
    if looks_like_csv(text):
        return text
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    try:
        return ast.literal_eval(text)
    except (ValueError, TypeError, SyntaxError, MemoryError, RecursionError):
        return None


def parse_time(ts: str) -> int | None:
    """Parse a timestamp key into epoch seconds (UTC)."""
    ts = ts.strip()
    number = _to_float(ts)
    if number is not None:
        if not math.isfinite(number):
            return None
        return int(number / 1000) if number > 1e12 else int(number)
    for fmt in _TIME_FORMATS:
        try:
            dt = datetime.strptime(ts, fmt)
        except ValueError:
            continue
        return int(dt.replace(tzinfo=timezone.utc).timestamp())
    try:
        dt = datetime.fromisoformat(ts)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def series_to_points(series: Series) -> list[ChartPoint]:
    """Build valid, ascending, de-duplicated points from a series map."""
    by_time: dict[int, ChartPoint] = {}
    for ts, fields in series.items():
        t = parse_time(ts)
        if t is None:
            continue
        prices = [fields.get(name) for name in _PRICE_FIELDS]
        if any(p is None or not math.isfinite(p) or p <= 0 for p in prices):
            continue
        volume = fields.get("volume")
        if volume is None or not math.isfinite(volume) or volume < 0:
            volume = 0.0
        o, h, l, c = prices
        by_time[t] = ChartPoint(time=t, open=o, high=h, low=l, close=c, volume=volume)
    return [by_time[t] for t in sorted(by_time)]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

class ResultExtractor:
    """Turns time-series tool results into chart points.

    Parameters
    ----------
    default_points:
        Window size when no day count is requested.
    """

    def __init__(self, default_points: int = DEFAULT_POINTS) -> None:
        self.default_points = default_points

    def extract(
        self,
        tool_name: str,
        raw_result: Any,
        tool_input_hints: dict[str, Any] | None = None,
    ) -> list[ChartPoint] | None:
        """Return the windowed, oldest-first points, or *None* if there are none."""
        if tool_name not in TIME_SERIES_TOOLS:
            return None

        payload = load_payload(raw_result)
        if isinstance(payload, str):
            series = csv_to_series(payload)
        elif isinstance(payload, dict):
            series = object_to_series(payload)
        else:
            series = {}

        points = series_to_points(series)
        if not points:
            _logger.info("No chart points extracted from %s result", tool_name)
            return None

        limit = requested_days(tool_input_hints) or self.default_points
        return points[-limit:]

    def extract_chart(
        self,
        tool_name: str,
        raw_result: Any,
        tool_input: dict[str, Any] | None = None,
        hints: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Build the ``chart_data`` payload, or *None* when there is no chart."""
        merged_hints = {**(tool_input or {}), **(hints or {})}
        points = self.extract(tool_name, raw_result, merged_hints)
        if not points:
            return None
        days = requested_days(merged_hints)
        return {
            "symbol": self._symbol(tool_input or {}, raw_result),
            "chartType": "candlestick",
            "data": [p.to_dict() for p in points],
            "timeRange": {
                "days": days or len(points),
                "startTime": points[0].time,
                "endTime": points[-1].time,
            },
        }

    @staticmethod
    def _symbol(tool_input: dict[str, Any], raw_result: Any) -> str:
        symbol = tool_input.get("symbol")
        if symbol:
            return str(symbol)
        payload = load_payload(raw_result)
        if isinstance(payload, dict):
            meta = payload.get("Meta Data")
            if not isinstance(meta, dict):
                return "Unknown"
            for key in ("2. Symbol", "2. Digital Currency Code"):
                if meta.get(key):
                    return str(meta[key])
        return "Unknown"
