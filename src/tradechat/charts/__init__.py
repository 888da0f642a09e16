"""Chart extraction for tradechat."""

from tradechat.charts.extractor import TIME_SERIES_TOOLS, ResultExtractor, requested_days

__all__ = ["TIME_SERIES_TOOLS", "ResultExtractor", "requested_days"]
