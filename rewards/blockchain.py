# rewards/blockchain.py
import logging
from typing import Optional, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from flask import current_app

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 15


class ChainVerifier:
    """Looks up BEP20 transaction receipts on a BscScan compatible explorer."""

    def __init__(self, api_key: str, base_url: str, session: Optional[requests.Session] = None):
        self.api_key = api_key
        self.base_url = base_url
        self.session = session or self._build_session()

    @staticmethod
    def _build_session() -> requests.Session:
        session = requests.Session()
        retry_strategy = Retry(
            total=3,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    @classmethod
    def from_config(cls) -> Optional["ChainVerifier"]:
        api_key = current_app.config.get("BSCSCAN_API_KEY")
        if not api_key:
            return None
        return cls(api_key, current_app.config.get("BSCSCAN_BASE_URL"))

    def verify_transaction(self, tx_hash: str) -> Tuple[bool, str]:
        """Returns (confirmed, message) for a transaction hash."""
        params = {
            "module": "transaction",
            "action": "gettxreceiptstatus",
            "txhash": tx_hash,
            "apikey": self.api_key,
        }
        try:
            response = self.session.get(self.base_url, params=params, timeout=REQUEST_TIMEOUT_SECONDS)
            response.raise_for_status()
            payload = response.json()
        except requests.exceptions.Timeout:
            logger.warning(f"Explorer timeout while verifying {tx_hash}")
            return False, "Blockchain explorer timed out"
        except requests.exceptions.RequestException as e:
            logger.warning(f"Explorer request failed for {tx_hash}: {e}")
            return False, "Blockchain explorer unavailable"
        except ValueError:
            logger.warning(f"Explorer returned a non-JSON body for {tx_hash}")
            return False, "Unexpected explorer response"

        result = payload.get("result") or {}
        status = result.get("status") if isinstance(result, dict) else None
        if payload.get("status") == "1" and status == "1":
            return True, "Transaction confirmed on chain"
        if status == "0":
            return False, "Transaction failed on chain"
        return False, payload.get("message") or "Transaction not found on chain"
