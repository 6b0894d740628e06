"""
local_cache.py
On-device persistence for purchase state.

Three keys, stored in one JSON file:
    iap_active_subscription  last server-confirmed entitlement snapshot
    iap_purchase_history     append-only list of confirmed purchases
    iap_receipt_data         receipt of the last confirmed purchase

The cache is only a hint. It is written after the backend confirms a purchase
and never unlocks anything on its own.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from config import IAPClient, get_logger
from iap.entities import PurchaseStatus, PurchaseTransaction
from iap.products import Platform

logger = get_logger(__name__)

ACTIVE_SUBSCRIPTION_KEY = "iap_active_subscription"
PURCHASE_HISTORY_KEY = "iap_purchase_history"
RECEIPT_DATA_KEY = "iap_receipt_data"


class JsonKeyValueStore:
    """String-keyed JSON values persisted to a single file, with an in-memory copy."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = Path(path or IAPClient.CACHE_PATH)
        self._cache: Optional[Dict[str, Any]] = None

    def _load(self) -> Dict[str, Any]:
        if self._cache is None:
            try:
                payload = json.loads(self._path.read_text(encoding="utf-8"))
                if not isinstance(payload, dict):
                    raise ValueError("root is not an object")
            except FileNotFoundError:
                payload = {}
            except (OSError, json.JSONDecodeError, ValueError) as e:
                logger.warning(f"Failed to load cache from {self._path}: {str(e)}")
                payload = {}
            self._cache = payload
        return self._cache

    def _persist(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(self._load(), ensure_ascii=False, indent=2), encoding="utf-8")

    def get(self, key: str, default: Any = None) -> Any:
        return self._load().get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._load()[key] = value
        self._persist()

    def remove(self, *keys: str) -> None:
        data = self._load()
        for key in keys:
            data.pop(key, None)
        self._persist()


class LocalCache:
    def __init__(self, store: Optional[JsonKeyValueStore] = None) -> None:
        self.store = store or JsonKeyValueStore()

    def get_active_subscription(self) -> Optional[PurchaseStatus]:
        raw = self.store.get(ACTIVE_SUBSCRIPTION_KEY)
        if not raw:
            return None
        try:
            return PurchaseStatus.model_validate(raw)
        except ValueError as e:
            logger.warning(f"Discarding unreadable cached subscription: {str(e)}")
            return None

    def save_active_subscription(self, status: PurchaseStatus) -> None:
        self.store.set(ACTIVE_SUBSCRIPTION_KEY, status.model_dump(mode="json"))

    def invalidate_active_subscription(self) -> None:
        self.store.remove(ACTIVE_SUBSCRIPTION_KEY)

    def get_purchase_history(self) -> List[Dict[str, Any]]:
        return list(self.store.get(PURCHASE_HISTORY_KEY, []))

    def get_receipt(self) -> Optional[str]:
        return self.store.get(RECEIPT_DATA_KEY)

    def is_confirmed(self, transaction_id: str) -> bool:
        return any(entry.get("transactionId") == transaction_id for entry in self.get_purchase_history())

    def save_confirmed_purchase(self, transaction: PurchaseTransaction, status: PurchaseStatus,
                                platform: Platform) -> None:
        """Write-through after the backend confirmed a purchase."""
        self.save_active_subscription(status)

        if not self.is_confirmed(transaction.transaction_id):
            history = self.get_purchase_history()
            history.append({
                "transactionId": transaction.transaction_id,
                "productId": transaction.product_id,
                "transactionDate": transaction.transaction_date,
                "confirmedAt": datetime.utcnow().isoformat(),
            })
            self.store.set(PURCHASE_HISTORY_KEY, history)

        receipt = transaction.receipt_for(platform)
        if receipt:
            self.store.set(RECEIPT_DATA_KEY, receipt)

        logger.info(f"Cached confirmed purchase {transaction.transaction_id}")

    def clear(self) -> None:
        self.store.remove(ACTIVE_SUBSCRIPTION_KEY, PURCHASE_HISTORY_KEY, RECEIPT_DATA_KEY)
