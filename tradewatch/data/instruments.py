from __future__ import annotations

FOREX_PAIRS: tuple[str, ...] = (
    "EURUSD", "GBPUSD", "USDJPY", "USDCHF", "USDCAD", "AUDUSD", "NZDUSD",
    "GBPJPY", "EURJPY", "AUDJPY", "CADJPY", "CHFJPY", "NZDJPY",
    "EURAUD", "EURGBP", "EURCHF", "EURCAD", "EURNZD",
    "GBPAUD", "GBPCAD", "GBPCHF", "GBPNZD",
    "AUDCAD", "AUDCHF", "AUDNZD", "CADCHF", "NZDCAD", "NZDCHF",
    "XAUUSD", "XAGUSD",
)

FUTURES: tuple[str, ...] = ("NQ", "ES", "YM", "RTY", "GC", "SI", "CL", "NG", "ZB", "ZN")

CRYPTO: tuple[str, ...] = (
    "BTCUSD", "ETHUSD", "SOLUSD", "BNBUSD", "XRPUSD",
    "ADAUSD", "DOGEUSD", "AVAXUSD", "LINKUSD", "MATICUSD",
)

# Yahoo chart API tickers. Anything missing is requested as-is.
YAHOO_SYMBOLS: dict[str, str] = {
    "USDJPY": "JPY=X",
    "USDCHF": "CHF=X",
    "USDCAD": "CAD=X",
    "XAUUSD": "GC=F",
    "XAGUSD": "SI=F",
    "MATICUSD": "POL-USD",
    "YM": "^DJI",
}


def normalize_symbol(symbol: str) -> str:
    return symbol.strip().upper().replace("/", "").replace("_", "")


def instrument_class(symbol: str) -> str:
    key = normalize_symbol(symbol)
    if key in CRYPTO:
        return "crypto"
    if key in FUTURES:
        return "futures"
    return "forex"


def enabled_pairs(*, forex: bool, futures: bool, crypto: bool) -> list[str]:
    pairs: list[str] = []
    if forex:
        pairs.extend(FOREX_PAIRS)
    if futures:
        pairs.extend(FUTURES)
    if crypto:
        pairs.extend(CRYPTO)
    return pairs


def yahoo_symbol(symbol: str, overrides: dict[str, str] | None = None) -> str:
    key = normalize_symbol(symbol)
    if overrides and key in overrides:
        return overrides[key]
    if key in YAHOO_SYMBOLS:
        return YAHOO_SYMBOLS[key]
    if key in CRYPTO:
        return f"{key[:-3]}-USD"
    if key in FUTURES:
        return f"{key}=F"
    if len(key) == 6 and key.isalpha():
        return f"{key}=X"
    return key


def pip_size(symbol: str) -> float:
    key = normalize_symbol(symbol)
    if "JPY" in key:
        return 0.01
    if "XAU" in key:
        return 0.1
    if "XAG" in key:
        return 0.01
    if key in CRYPTO or key in FUTURES:
        return 1.0
    return 0.0001
