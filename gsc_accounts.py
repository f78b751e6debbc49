"""
Multi-account credential store for Google Search Console.

Accounts are provisioned from:
1. GSC_ACCOUNTS_JSON (inline JSON document)
2. GSC_ACCOUNTS_FILE (path to a JSON document)
3. GSC_REFRESH_TOKEN / GSC_EMAIL (single account registered as "default")
4. The register_account tool at runtime
5. An optional account source, consulted when a selector is not registered

Document format:
    {"accounts": [{"id": "main", "email": "user@gmail.com",
                   "refreshToken": "1//...", "accessToken": "ya29..."}]}
"""

import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from gsc_config import Settings
from gsc_errors import AccountNotFound, GSCError, InvalidParameter, NoAccountsConfigured

logger = logging.getLogger(__name__)


@dataclass
class Account:
    id: str
    email: str
    refresh_token: str
    access_token: Optional[str] = None
    expires_at: Optional[int] = None  # epoch millis

    def to_public(self) -> Dict[str, str]:
        return {"id": self.id, "email": self.email}


class AccountStore:
    """
    In-memory registry of accounts, reachable by id or by email (case-insensitive).

    Both indexes point at the same Account object. When two ids share an
    email, the email key follows the most recent registration and the older
    record stays reachable by its id. All mutation goes through register()
    and update_tokens().

    An optional `account_source(selector)` is consulted when resolve() misses;
    it returns an entry in the document format ({"id", "email", "refreshToken",
    "accessToken"}) or None. An optional `token_sink(account)` receives every
    access token written back after a refresh.
    """

    def __init__(
        self,
        account_source: Optional[Callable[[str], Optional[Dict[str, Any]]]] = None,
        token_sink: Optional[Callable[[Account], None]] = None,
    ):
        self._by_id: Dict[str, Account] = {}
        self._by_email: Dict[str, Account] = {}
        self._lock = threading.RLock()
        self._listeners: List[Callable[[str], None]] = []
        self._account_source = account_source
        self._token_sink = token_sink

    def add_invalidation_listener(self, callback: Callable[[str], None]) -> None:
        """Call `callback(account_id)` whenever an account's credentials are replaced."""
        self._listeners.append(callback)

    def register(self, id: str, email: str, refresh_token: str, access_token: Optional[str] = None) -> Account:
        id = (id or "").strip()
        email = (email or "").strip()
        if not id:
            raise InvalidParameter("id", "must be a non-empty string")
        if not email:
            raise InvalidParameter("email", "must be a non-empty string")
        if not isinstance(refresh_token, str) or not refresh_token:
            raise InvalidParameter("refreshToken", "must be a non-empty string")

        email_key = email.lower()
        with self._lock:
            previous = self._by_id.get(id)
            if (
                previous is not None
                and previous.email == email
                and previous.refresh_token == refresh_token
                and (access_token is None or previous.access_token == access_token)
            ):
                self._by_email[email_key] = previous
                return previous

            account = Account(id=id, email=email, refresh_token=refresh_token, access_token=access_token or None)
            if previous is not None:
                old_key = previous.email.lower()
                if old_key != email_key and self._by_email.get(old_key) is previous:
                    del self._by_email[old_key]
            self._by_id[id] = account
            self._by_email[email_key] = account

        for callback in self._listeners:
            callback(id)
        logger.info(f"Registered account {id} ({email})")
        return account

    def lookup(self, id_or_email: str) -> Optional[Account]:
        if not id_or_email:
            return None
        with self._lock:
            return self._by_id.get(id_or_email) or self._by_email.get(id_or_email.lower())

    def list(self) -> List[Account]:
        with self._lock:
            return [self._by_id[key] for key in sorted(self._by_id)]

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._by_id)

    def resolve(self, selector: Optional[str] = None) -> Account:
        """
        Pick the account a tool call operates on.

        With a selector: exact id, then case-insensitive email, then the
        account source (if any). Without one: the account with the
        lexicographically-first id.
        """
        if selector:
            account = self.lookup(selector)
            if account is None:
                account = self._fetch_from_source(selector)
            if account is None:
                raise AccountNotFound(selector)
            return account
        accounts = self.list()
        if not accounts:
            raise NoAccountsConfigured()
        return accounts[0]

    def _fetch_from_source(self, selector: str) -> Optional[Account]:
        if self._account_source is None:
            return None
        entry = self._account_source(selector)
        if entry is None:
            return None
        logger.info(f"Loaded account {entry.get('id')!r} from account source")
        return self.register(
            str(entry.get("id") or ""),
            str(entry.get("email") or ""),
            entry.get("refreshToken"),
            entry.get("accessToken") or None,
        )

    def update_tokens(self, account: Account, access_token: Optional[str], expires_at: Optional[int]) -> bool:
        """Write refreshed tokens into `account` unless it has since been replaced by register()."""
        with self._lock:
            if self._by_id.get(account.id) is not account:
                return False
            account.access_token = access_token
            account.expires_at = expires_at

        if self._token_sink is not None and access_token:
            try:
                self._token_sink(account)
            except Exception as e:
                logger.warning(f"Failed to persist access token for {account.email}: {e}")
        return True


def _register_entry(store: AccountStore, entry: Any, source: str) -> bool:
    if not isinstance(entry, dict):
        logger.warning(f"Skipping malformed account entry in {source}: not an object")
        return False
    try:
        store.register(
            str(entry.get("id") or ""),
            str(entry.get("email") or ""),
            entry.get("refreshToken") or "",
            entry.get("accessToken") or None,
        )
    except GSCError as e:
        logger.warning(f"Skipping account entry {entry.get('id')!r} in {source}: {e}")
        return False
    return True


def load_accounts_document(store: AccountStore, document: Any, source: str) -> int:
    if isinstance(document, dict):
        entries = document.get("accounts") or []
    else:
        entries = document
    if not isinstance(entries, list):
        logger.warning(f"Ignoring {source}: 'accounts' must be a list")
        return 0
    return sum(1 for entry in entries if _register_entry(store, entry, source))


def load_accounts(store: AccountStore, settings: Settings) -> int:
    """Populate `store` from every configured source. Never raises on bad input."""
    loaded = 0

    if settings.accounts_json:
        try:
            document = json.loads(settings.accounts_json)
        except ValueError as e:
            logger.warning(f"Failed to parse GSC_ACCOUNTS_JSON: {e}")
        else:
            loaded += load_accounts_document(store, document, "GSC_ACCOUNTS_JSON")

    if settings.accounts_file:
        try:
            with open(settings.accounts_file, encoding="utf-8") as f:
                document = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load GSC_ACCOUNTS_FILE {settings.accounts_file}: {e}")
        else:
            loaded += load_accounts_document(store, document, settings.accounts_file)

    if settings.refresh_token:
        entry = {
            "id": "default",
            "email": settings.email,
            "refreshToken": settings.refresh_token,
            "accessToken": settings.access_token,
        }
        if _register_entry(store, entry, "GSC_REFRESH_TOKEN"):
            loaded += 1

    if store.count == 0:
        logger.warning("No Search Console accounts configured; register one with register_account")
    else:
        logger.info(f"Loaded {store.count} Search Console account(s)")
    return loaded
