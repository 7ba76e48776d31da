"""
Python client for the Pickles Shop API.

The logged-in identity (token plus user profile) is kept as a single JSON blob
on disk: loaded when the client starts, cleared on logout, on a 401 from the
server, or when the file cannot be parsed.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


class ShopAPIError(Exception):
    def __init__(self, status_code: int, detail: Any):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"{status_code}: {detail}")


class SessionFile:
    def __init__(self, path):
        self.path = Path(path)

    def load(self) -> Optional[dict]:
        if not self.path.exists():
            return None
        try:
            blob = json.loads(self.path.read_text())
        except (OSError, ValueError):
            logger.warning("Discarding unreadable session file %s", self.path)
            self.clear()
            return None
        if not isinstance(blob, dict) or not blob.get("access_token"):
            self.clear()
            return None
        return blob

    def save(self, blob: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(blob))

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class ShopClient:
    def __init__(self, http: httpx.Client, session_file: Optional[SessionFile] = None):
        self.http = http
        self.session_file = session_file
        self.session: Optional[dict] = session_file.load() if session_file else None

    @classmethod
    def from_url(cls, base_url: str, session_path=None, timeout: float = 10.0) -> "ShopClient":
        session_file = SessionFile(session_path) if session_path else None
        return cls(httpx.Client(base_url=base_url, timeout=timeout), session_file)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self) -> None:
        self.http.close()

    @property
    def user(self) -> Optional[dict]:
        return self.session.get("user") if self.session else None

    def _forget_session(self) -> None:
        self.session = None
        if self.session_file:
            self.session_file.clear()

    def _request(self, method: str, path: str, **kwargs) -> Any:
        headers = kwargs.pop("headers", {})
        if self.session:
            headers["Authorization"] = f"Bearer {self.session['access_token']}"
        resp = self.http.request(method, path, headers=headers, **kwargs)
        if resp.status_code == 401 and self.session:
            self._forget_session()
        if resp.status_code >= 400:
            try:
                detail = resp.json().get("detail")
            except ValueError:
                detail = resp.text
            raise ShopAPIError(resp.status_code, detail)
        return resp.json()

    # -------------------- Accounts --------------------

    def register(self, username: str, email: str, password: str, confirm_password: Optional[str] = None) -> dict:
        return self._request("POST", "/auth/register", json={
            "username": username,
            "email": email,
            "password": password,
            "confirm_password": password if confirm_password is None else confirm_password,
        })

    def login(self, username: str, password: str) -> dict:
        blob = self._request("POST", "/auth/login", json={"username": username, "password": password})
        self.session = blob
        if self.session_file:
            self.session_file.save(blob)
        return blob["user"]

    def logout(self) -> None:
        try:
            if self.session:
                self._request("POST", "/auth/logout")
        except ShopAPIError as exc:
            if exc.status_code != 401:
                raise
        finally:
            self._forget_session()

    def me(self) -> dict:
        user = self._request("GET", "/me")
        if self.session is not None:
            self.session["user"] = user
            if self.session_file:
                self.session_file.save(self.session)
        return user

    # -------------------- Shopping --------------------

    def products(self, q: Optional[str] = None, category: Optional[str] = None) -> list:
        params = {k: v for k, v in {"q": q, "category": category}.items() if v}
        return self._request("GET", "/products", params=params)

    def add_to_cart(self, product_id: str, quantity: int = 1) -> dict:
        return self._request("POST", "/cart", json={"product_id": product_id, "quantity": quantity})

    def cart(self) -> dict:
        return self._request("GET", "/cart")

    def quote(self, **options) -> dict:
        return self._request("POST", "/checkout/quote", json=options)

    def checkout(self, branch: str, items: Optional[Dict[str, int]] = None, **options) -> dict:
        body = {"branch": branch, **options}
        if items is not None:
            body["items"] = items
        return self._request("POST", "/checkout", json=body)

    def submit_large_order(self, **fields) -> dict:
        return self._request("POST", "/large-orders", json=fields)

    def orders(self) -> list:
        return self._request("GET", "/orders")

    def order(self, order_id: str) -> dict:
        return self._request("GET", f"/orders/{order_id}")
