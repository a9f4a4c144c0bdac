"""
REST / HTTP API server for FarmFlow nodes.

Built on ``aiohttp`` and started alongside the interactive console.

Endpoints
---------
GET  /health                              Liveness + block height
GET  /status                              Ledger summary
GET  /pools                               All pools
GET  /pools/{pool_id}                     One pool
GET  /pools/{pool_id}/users/{address}     Position of address in pool
GET  /pools/{pool_id}/pending/{address}   Claimable rewards right now
GET  /events?limit=N                      Most recent receipts
GET  /balance/{asset}/{address}           Asset book balance
POST /tx/deposit                          {"pool_id", "amount"}
POST /tx/withdraw                         {"pool_id", "amount"}
POST /tx/claims                           {"pool_id"}
POST /tx/claim                            {"pool_id", "asset"}
POST /tx/emergency_withdraw               {"pool_id"}
POST /tx/approve                          {"asset", "amount"}
POST /admin/add_pool                      {"stake_asset", "alloc_point", "with_update"}
POST /admin/set_pool                      {"pool_id", "alloc_point", "with_update"}
POST /admin/dev                           {"new_address"}
POST /admin/update_pools                  {}

Every POST except ``/admin/update_pools`` acts as the account proven by
the ``X-Account`` and ``X-Account-Key`` headers.  A body ``account`` field
is optional; if present it must name that same account (403 otherwise).

Ledger rejections come back as ``{"error": code, "message": ...}`` with
403 for ``UnauthorizedAccess``, 404 for an unknown pool or asset and 400
for everything else.

Security
--------
- API-key authentication on POST endpoints via ``X-API-Key`` header only.
  Timing-safe comparison via ``hmac.compare_digest``.
- Per-account keys (``api.account_keys``) bind each POST to the caller it
  acts for; owner and dev capabilities need the owner and dev keys.
- Per-IP token-bucket rate limiter (configurable RPM).
- Request body size cap (``max_body_bytes``).

Usage:
    api = APIServer(node, host="127.0.0.1", port=8080)
    await api.start()    # call inside existing event loop
    ...
    await api.stop()
"""

from __future__ import annotations

import hmac
import json
import logging
import time
from collections import defaultdict
from typing import TYPE_CHECKING, Any, Callable

from aiohttp import web

from farmflow_core.errors import FarmError, UnauthorizedAccess, UnknownPool

if TYPE_CHECKING:
    from farmflow_core.config import APIConfig

logger = logging.getLogger("farmflow_api")

MAX_EVENTS_PAGE = 500


# ═══════════════════════════════════════════════════════════════════
#  Input helpers
# ═══════════════════════════════════════════════════════════════════

def _safe_int(value: Any, name: str = "value") -> int:
    """Convert *value* to int, rejecting floats, bools and junk."""
    if isinstance(value, bool) or isinstance(value, float):
        raise web.HTTPBadRequest(text=f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise web.HTTPBadRequest(text=f"{name} must be an integer")


def _require_str(body: dict, name: str) -> str:
    value = body.get(name, "")
    if not isinstance(value, str) or not value:
        raise web.HTTPBadRequest(text=f"{name} is required")
    return value


async def _read_body(request: web.Request) -> dict:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except Exception as exc:
        raise web.HTTPBadRequest(text="Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(text="JSON body must be an object")
    return body


def _error_response(exc: FarmError) -> web.Response:
    if isinstance(exc, UnauthorizedAccess):
        status = 403
    elif isinstance(exc, UnknownPool):
        status = 404
    else:
        status = 400
    return web.json_response(exc.to_dict(), status=status)


def _caller(request: web.Request, body: dict) -> str:
    """Account proven by the request headers; a body ``account`` must match it."""
    account = request.get("account")
    if account is None:
        raise web.HTTPUnauthorized(text="X-Account and X-Account-Key headers are required")
    claimed = body.get("account")
    if claimed is not None and claimed != account:
        logger.warning(f"request authenticated as {account} tried to act for {claimed!r}")
        denied = UnauthorizedAccess(f"authenticated as {account}, not {claimed}")
        raise web.HTTPForbidden(text=json.dumps(denied.to_dict()), content_type="application/json")
    return account


def _unknown_asset(asset_id: str) -> web.Response:
    return web.json_response(
        {"error": "UnknownAsset", "message": f"no asset book for {asset_id}"},
        status=404,
    )


# ═══════════════════════════════════════════════════════════════════
#  Rate Limiter (per-IP token bucket)
# ═══════════════════════════════════════════════════════════════════

class _TokenBucket:
    """Simple per-IP token-bucket rate limiter."""

    __slots__ = ("_buckets", "_rpm")

    def __init__(self, rpm: int):
        self._rpm = rpm  # 0 = unlimited
        # ip -> [tokens, last_refill]
        self._buckets: dict[str, list[float]] = defaultdict(
            lambda: [float(rpm), time.monotonic()]
        )

    def allow(self, ip: str) -> bool:
        if self._rpm <= 0:
            return True
        bucket = self._buckets[ip]
        now = time.monotonic()
        bucket[0] = min(float(self._rpm), bucket[0] + (now - bucket[1]) * (self._rpm / 60.0))
        bucket[1] = now
        if bucket[0] >= 1.0:
            bucket[0] -= 1.0
            return True
        return False


# ═══════════════════════════════════════════════════════════════════
#  Middleware factories
# ═══════════════════════════════════════════════════════════════════

def _make_rate_limit_middleware(bucket: _TokenBucket):
    """aiohttp middleware that enforces per-IP rate limits."""

    @web.middleware
    async def rate_limit_middleware(request: web.Request, handler):
        ip = request.remote or "unknown"
        if not bucket.allow(ip):
            raise web.HTTPTooManyRequests(
                text="Rate limit exceeded. Try again later.",
                headers={"Retry-After": "5"},
            )
        return await handler(request)

    return rate_limit_middleware


def _make_api_key_middleware(api_key: str):
    """aiohttp middleware that requires ``X-API-Key`` on POST requests."""

    @web.middleware
    async def api_key_middleware(request: web.Request, handler):
        if request.method == "POST":
            key = request.headers.get("X-API-Key", "")
            if not hmac.compare_digest(key, api_key):
                raise web.HTTPUnauthorized(text="Invalid or missing API key")
        return await handler(request)

    return api_key_middleware


def _make_account_middleware(account_keys: dict[str, str]):
    """aiohttp middleware that binds POST requests to a proven account.

    ``X-Account`` names the caller and ``X-Account-Key`` must equal that
    account's configured key.  The verified name lands in
    ``request["account"]``; requests without ``X-Account`` pass through
    unbound and are refused by any handler that needs a caller.
    """

    @web.middleware
    async def account_middleware(request: web.Request, handler):
        if request.method == "POST":
            account = request.headers.get("X-Account", "")
            if account:
                expected = account_keys.get(account, "")
                key = request.headers.get("X-Account-Key", "")
                if not expected or not hmac.compare_digest(key.encode(), expected.encode()):
                    raise web.HTTPUnauthorized(text="Invalid account credentials")
                request["account"] = account
        return await handler(request)

    return account_middleware


def build_middlewares(cfg: APIConfig | None) -> list:
    middlewares: list = []
    if cfg is not None and cfg.rate_limit_rpm > 0:
        middlewares.append(_make_rate_limit_middleware(_TokenBucket(cfg.rate_limit_rpm)))
    if cfg is not None and cfg.api_key:
        middlewares.append(_make_api_key_middleware(cfg.api_key))
    middlewares.append(_make_account_middleware(cfg.account_keys if cfg is not None else {}))
    return middlewares


class APIServer:
    """
    Thin aiohttp wrapper around a running FarmNode.

    The node must expose ``engine``, ``assets`` (asset id -> book),
    ``get_or_create_asset(asset_id)``, ``status()`` and ``persist()``.
    """

    def __init__(
        self,
        node: Any,
        host: str = "127.0.0.1",
        port: int = 8080,
        *,
        api_config: APIConfig | None = None,
    ):
        self.node = node
        self.host = host
        self.port = port
        self._api_config = api_config
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    # ── lifecycle ────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        max_body = 65_536
        if self._api_config is not None:
            max_body = self._api_config.max_body_bytes
        app = web.Application(
            middlewares=build_middlewares(self._api_config),
            client_max_size=max_body,
        )
        self._register_routes(app)
        self._app = app
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"API listening on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()

    # ── routes ───────────────────────────────────────────────────

    def _register_routes(self, app: web.Application) -> None:
        app.router.add_get("/health", self._health)
        app.router.add_get("/status", self._status)
        app.router.add_get("/pools", self._pools)
        app.router.add_get("/pools/{pool_id}", self._pool)
        app.router.add_get("/pools/{pool_id}/users/{address}", self._user)
        app.router.add_get("/pools/{pool_id}/pending/{address}", self._pending)
        app.router.add_get("/events", self._events)
        app.router.add_get("/balance/{asset}/{address}", self._balance)
        # Depositor transactions
        app.router.add_post("/tx/deposit", self._deposit)
        app.router.add_post("/tx/withdraw", self._withdraw)
        app.router.add_post("/tx/claims", self._claims)
        app.router.add_post("/tx/claim", self._claim)
        app.router.add_post("/tx/emergency_withdraw", self._emergency_withdraw)
        app.router.add_post("/tx/approve", self._approve)
        # Owner / dev
        app.router.add_post("/admin/add_pool", self._add_pool)
        app.router.add_post("/admin/set_pool", self._set_pool)
        app.router.add_post("/admin/dev", self._dev)
        app.router.add_post("/admin/update_pools", self._update_pools)

    def _submit(self, fn: Callable[..., Any], *args: Any) -> web.Response:
        """Run a mutating ledger call; persist and render on success."""
        try:
            result = fn(*args)
        except FarmError as exc:
            return _error_response(exc)
        self.node.persist()
        if hasattr(result, "to_dict"):
            result = result.to_dict()
        return web.json_response({"status": "ok", "result": result}, dumps=_json_dumps)

    @staticmethod
    def _pool_id(request: web.Request) -> int:
        return _safe_int(request.match_info["pool_id"], "pool_id")

    # ── query handlers ───────────────────────────────────────────

    async def _health(self, _request: web.Request) -> web.Response:
        engine = self.node.engine
        return web.json_response({
            "ok": True,
            "block": engine.clock.current_block(),
            "pools": engine.pool_length(),
        })

    async def _status(self, _request: web.Request) -> web.Response:
        return web.json_response(self.node.status(), dumps=_json_dumps)

    async def _pools(self, _request: web.Request) -> web.Response:
        pools = [p.to_dict() for p in self.node.engine.state.pools]
        return web.json_response({"pools": pools, "count": len(pools)}, dumps=_json_dumps)

    async def _pool(self, request: web.Request) -> web.Response:
        try:
            pool = self.node.engine.pool_info(self._pool_id(request))
        except FarmError as exc:
            return _error_response(exc)
        return web.json_response(pool.to_dict(), dumps=_json_dumps)

    async def _user(self, request: web.Request) -> web.Response:
        address = request.match_info["address"]
        try:
            info = self.node.engine.user_info(self._pool_id(request), address)
        except FarmError as exc:
            return _error_response(exc)
        return web.json_response({"address": address, **info.to_dict()}, dumps=_json_dumps)

    async def _pending(self, request: web.Request) -> web.Response:
        address = request.match_info["address"]
        pool_id = self._pool_id(request)
        try:
            pending = self.node.engine.pending_by_asset(pool_id, address)
        except FarmError as exc:
            return _error_response(exc)
        return web.json_response(
            {"address": address, "pool_id": pool_id, "pending": pending},
            dumps=_json_dumps,
        )

    async def _events(self, request: web.Request) -> web.Response:
        limit = _safe_int(request.query.get("limit", 50), "limit")
        limit = max(1, min(limit, MAX_EVENTS_PAGE))
        events = list(self.node.engine.events)[-limit:]
        return web.json_response(
            {"events": [e.to_dict() for e in events], "count": len(events)},
            dumps=_json_dumps,
        )

    async def _balance(self, request: web.Request) -> web.Response:
        asset_id = request.match_info["asset"]
        address = request.match_info["address"]
        book = self.node.assets.get(asset_id)
        if book is None:
            return _unknown_asset(asset_id)
        return web.json_response(
            {"asset": asset_id, "address": address, "balance": book.balance_of(address)},
            dumps=_json_dumps,
        )

    # ── depositor transactions ───────────────────────────────────

    async def _deposit(self, request: web.Request) -> web.Response:
        body = await _read_body(request)
        return self._submit(
            self.node.engine.deposit,
            _caller(request, body),
            _safe_int(body.get("pool_id"), "pool_id"),
            _safe_int(body.get("amount", 0), "amount"),
        )

    async def _withdraw(self, request: web.Request) -> web.Response:
        body = await _read_body(request)
        return self._submit(
            self.node.engine.withdraw,
            _caller(request, body),
            _safe_int(body.get("pool_id"), "pool_id"),
            _safe_int(body.get("amount", 0), "amount"),
        )

    async def _claims(self, request: web.Request) -> web.Response:
        body = await _read_body(request)
        return self._submit(
            self.node.engine.claims,
            _caller(request, body),
            _safe_int(body.get("pool_id"), "pool_id"),
        )

    async def _claim(self, request: web.Request) -> web.Response:
        body = await _read_body(request)
        return self._submit(
            self.node.engine.claim,
            _caller(request, body),
            _safe_int(body.get("pool_id"), "pool_id"),
            _require_str(body, "asset"),
        )

    async def _emergency_withdraw(self, request: web.Request) -> web.Response:
        body = await _read_body(request)
        return self._submit(
            self.node.engine.emergency_withdraw,
            _caller(request, body),
            _safe_int(body.get("pool_id"), "pool_id"),
        )

    async def _approve(self, request: web.Request) -> web.Response:
        """Let the ledger custody pull ``amount`` of ``asset`` from ``account``."""
        body = await _read_body(request)
        account = _caller(request, body)
        asset_id = _require_str(body, "asset")
        amount = _safe_int(body.get("amount", 0), "amount")
        book = self.node.assets.get(asset_id)
        if book is None:
            return _unknown_asset(asset_id)
        spender = self.node.engine.custody

        def approve() -> dict:
            book.approve(account, spender, amount)
            return {"asset": asset_id, "owner": account, "spender": spender, "amount": amount}

        return self._submit(approve)

    # ── owner / dev ──────────────────────────────────────────────

    async def _add_pool(self, request: web.Request) -> web.Response:
        body = await _read_body(request)
        account = _caller(request, body)
        stake_asset = _require_str(body, "stake_asset")
        alloc_point = _safe_int(body.get("alloc_point", 0), "alloc_point")
        with_update = bool(body.get("with_update", False))
        engine = self.node.engine

        def add_pool() -> dict:
            # Check ownership before an asset book is created for the pool.
            if not engine.owner.check(account).ok:
                raise UnauthorizedAccess("add_pool requires the owner")
            book = self.node.get_or_create_asset(stake_asset)
            pool_id = engine.add_pool(account, alloc_point, book, with_update)
            return engine.pool_info(pool_id).to_dict()

        return self._submit(add_pool)

    async def _set_pool(self, request: web.Request) -> web.Response:
        body = await _read_body(request)
        engine = self.node.engine
        account = _caller(request, body)
        pool_id = _safe_int(body.get("pool_id"), "pool_id")
        alloc_point = _safe_int(body.get("alloc_point", 0), "alloc_point")
        with_update = bool(body.get("with_update", False))

        def set_pool() -> dict:
            engine.set_pool(account, pool_id, alloc_point, with_update)
            return engine.pool_info(pool_id).to_dict()

        return self._submit(set_pool)

    async def _dev(self, request: web.Request) -> web.Response:
        body = await _read_body(request)
        engine = self.node.engine
        account = _caller(request, body)
        new_address = _require_str(body, "new_address")

        def dev() -> dict:
            engine.dev(account, new_address)
            return {"dev_address": engine.config.dev_address}

        return self._submit(dev)

    async def _update_pools(self, _request: web.Request) -> web.Response:
        engine = self.node.engine

        def update() -> dict:
            engine.mass_update_pools()
            return {"block": engine.clock.current_block(), "pools": engine.pool_length()}

        return self._submit(update)


def _json_dumps(obj: Any) -> str:
    """JSON serialiser that handles non-standard types."""
    return json.dumps(obj, default=str)
