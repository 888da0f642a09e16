"""tradechat: streaming chat orchestration with market-data tools."""

__version__ = "0.1.0"
