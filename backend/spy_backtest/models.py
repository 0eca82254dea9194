import enum


class OptionType(str, enum.Enum):
    CALL = "CALL"
    PUT = "PUT"


class OptionTypeFilter(str, enum.Enum):
    CALL = "CALL"
    PUT = "PUT"
    BOTH = "BOTH"


class OptionExpiry(str, enum.Enum):
    SHORT_TERM = "shortTerm"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"


class MarketCondition(str, enum.Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"
    VOLATILE = "volatile"


class TradeStatus(str, enum.Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class CloseReason(str, enum.Enum):
    EXPIRY = "EXPIRY"
    STOP_LOSS = "STOP_LOSS"
    PROFIT_TARGET = "PROFIT_TARGET"


class PositionSizingType(str, enum.Enum):
    FIXED = "fixed"
    PERCENTAGE = "percentage"
    KELLY = "kelly"


class RiskTolerance(str, enum.Enum):
    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"
