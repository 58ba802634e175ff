from __future__ import annotations

from typing import Callable, Dict, Optional

import requests

from ..config import Settings
from ..errors import ValidationError
from .base import Connector, FetchResult, finalize, with_retries
from .csv_source import CsvConnector, parse_csv
from .exchange import ExchangeConnector
from .manual import ManualConnector
from .oauth import OAuthConnector
from .wallet import WalletConnector

__all__ = [
    "Connector",
    "FetchResult",
    "finalize",
    "get_connector",
    "parse_csv",
    "with_retries",
]


def get_connector(
    data_source: str,
    session: Optional[requests.Session] = None,
    settings: Optional[Settings] = None,
) -> Connector:
    """Connector for one `data_source` tag of the source payload union."""
    factories: Dict[str, Callable[[], Connector]] = {
        "wallet": lambda: WalletConnector(session, settings),
        "api-key": lambda: ExchangeConnector(session, settings),
        "oauth": lambda: OAuthConnector(session, settings),
        "csv": CsvConnector,
        "manual": ManualConnector,
    }
    if data_source not in factories:
        raise ValidationError(f"Unknown data source: {data_source!r}")
    return factories[data_source]()
