from tradedesk.config.settings import RiskThresholds, TradeDeskSettings, get_settings

__all__ = [
    "RiskThresholds",
    "TradeDeskSettings",
    "get_settings",
]
