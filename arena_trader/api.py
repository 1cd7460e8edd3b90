"""
FastAPI read-only projection service for the trading arena.
Exposes leaderboard, per-agent account, decisions, trades and performance.
Includes rate limiting middleware to prevent abuse.
"""
import asyncio
import logging
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .agents.orchestrator import DecisionCycle
from .config import load_config
from .errors import UpstreamError
from .fleet import Fleet, build_fleet
from .schemas import AccountState, AccountSnapshot, ensure_utc, utcnow

logger = logging.getLogger("arena_trader.api")

TIME_LAYOUTS = ("%Y-%m-%d %H:%M:%S", "%Y-%m-%dT%H:%M:%S")


class RateLimiter:
    """Simple in-memory rate limiter with per-endpoint limits."""

    def __init__(self):
        self.requests: Dict[str, List[float]] = defaultdict(list)
        self.limits = {
            "/account": (30, 60),
            "/positions": (30, 60),
            "/market/kline": (60, 60),
            "/trades": (60, 60),
            "default": (120, 60),
        }

    def _clean_old_requests(self, key: str, window: int):
        """Remove requests outside the time window."""
        now = time.time()
        self.requests[key] = [t for t in self.requests[key] if now - t < window]

    def is_allowed(self, endpoint: str, client_id: str = "default") -> tuple[bool, int, int]:
        """Check if request is allowed under rate limit.

        Returns: (allowed, remaining, retry_after_seconds)
        """
        path_key = next((k for k in self.limits if k in endpoint), "default")
        max_requests, window = self.limits[path_key]
        key = f"{client_id}:{path_key}"

        self._clean_old_requests(key, window)

        current_count = len(self.requests[key])
        remaining = max_requests - current_count

        if current_count >= max_requests:
            oldest = min(self.requests[key]) if self.requests[key] else time.time()
            retry_after = int(oldest + window - time.time()) + 1
            return False, 0, retry_after

        self.requests[key].append(time.time())
        return True, remaining - 1, 0


def parse_limit(value: Optional[str], default: int, maximum: int) -> int:
    """Parsed limit, capped at maximum; -1 when the value is not a positive integer."""
    if value is None or value == "":
        return default
    try:
        parsed = int(value)
    except ValueError:
        return -1
    if parsed <= 0:
        return -1
    return min(parsed, maximum)


def parse_time_param(value: Optional[str]) -> Optional[datetime]:
    """RFC 3339 or the two plain layouts; anything else counts as absent."""
    value = (value or "").strip()
    if not value:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        pass
    for layout in TIME_LAYOUTS:
        try:
            return ensure_utc(datetime.strptime(value, layout))
        except ValueError:
            continue
    return None


def normalize_symbol(symbol: str) -> str:
    symbol = symbol.strip().upper()
    return symbol if symbol.endswith("USDT") else symbol + "USDT"


def trades_lookback(limit: int) -> int:
    return max(600, min(limit * 6, 5000))


def _latest_snapshot(cycle: DecisionCycle) -> Optional[AccountSnapshot]:
    if cycle.last_account is not None:
        return cycle.last_account.snapshot()
    for record in reversed(cycle.ledger.latest_records(20)):
        if record.account is not None:
            return record.account
    return None


def _account_summary(cycle: DecisionCycle, snapshot: Optional[AccountSnapshot]) -> dict:
    initial = cycle.settings.initial_balance
    equity = snapshot.equity if snapshot else initial
    margin = snapshot.margin_used if snapshot else 0.0
    total_pnl = equity - initial
    return {
        "total_equity": equity,
        "available_balance": snapshot.available_balance if snapshot else initial,
        "total_pnl": total_pnl,
        "total_pnl_pct": (total_pnl / initial) * 100 if initial > 0 else 0.0,
        "total_unrealized_pnl": snapshot.unrealized_pnl if snapshot else 0.0,
        "margin_used": margin,
        "margin_used_pct": (margin / equity) * 100 if equity > 0 else 0.0,
        "position_count": snapshot.position_count if snapshot else 0,
        "initial_balance": initial,
    }


def create_app(fleet: Optional[Fleet] = None, start_scheduler: bool = True) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.fleet is None:
            app.state.fleet = build_fleet(load_config())
        if start_scheduler:
            app.state.fleet.scheduler.start()
        logger.info("Arena trading service started")

        yield

        await app.state.fleet.aclose()
        logger.info("Arena trading service shutdown complete")

    app = FastAPI(title="Arena Trading Service", version="1.0.0", lifespan=lifespan)
    app.state.fleet = fleet
    rate_limiter = RateLimiter()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next):
        """Rate limiting middleware - checks limits before processing request."""
        if request.url.path == "/api/health":
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        allowed, remaining, retry_after = rate_limiter.is_allowed(request.url.path, client_ip)

        if not allowed:
            logger.warning(f"Rate limit exceeded for {client_ip} on {request.url.path}")
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded", "retry_after": retry_after},
                headers={"Retry-After": str(retry_after), "X-RateLimit-Remaining": "0"},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        return response

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Request logging middleware."""
        start_time = time.time()
        response = await call_next(request)
        duration = (time.time() - start_time) * 1000
        logger.info(f"{request.method} {request.url.path} - {response.status_code} ({duration:.1f}ms)")
        return response

    def get_fleet() -> Fleet:
        if app.state.fleet is None:
            raise HTTPException(status_code=503, detail="Trading service not initialized")
        return app.state.fleet

    def get_cycle(trader_id: Optional[str]) -> DecisionCycle:
        cycle = get_fleet().get(trader_id)
        if cycle is None:
            raise HTTPException(status_code=404, detail=f"Trader not found: {trader_id or '(default)'}")
        return cycle

    async def fetch_account(cycle: DecisionCycle) -> AccountState:
        try:
            return await asyncio.wait_for(
                cycle.exchange.get_account(),
                timeout=cycle.settings.exchange_timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise HTTPException(status_code=502, detail="Account query timed out")
        except UpstreamError as e:
            logger.error(f"[{cycle.agent_id}] Account fetch failed: {e}")
            raise HTTPException(status_code=502, detail=str(e))

    @app.get("/api/health")
    async def health_check():
        fleet = app.state.fleet
        return {
            "status": "healthy",
            "service": "arena_trader",
            "timestamp": utcnow().isoformat(),
            "agents": len(fleet.cycles) if fleet else 0,
            "scheduler_running": bool(fleet and fleet.scheduler.running),
        }

    @app.get("/api/competition")
    async def get_competition():
        fleet = get_fleet()
        traders = []
        for cycle in fleet.cycles:
            summary = _account_summary(cycle, _latest_snapshot(cycle))
            traders.append({
                "trader_id": cycle.agent_id,
                "trader_name": cycle.settings.name,
                "ai_model": cycle.settings.oracle_model,
                "exchange": cycle.settings.exchange,
                "is_running": not cycle.status.halted and fleet.scheduler.running,
                **summary,
            })
        traders.sort(key=lambda t: t["total_pnl_pct"], reverse=True)
        return {"count": len(traders), "traders": traders}

    @app.get("/api/traders")
    async def get_traders():
        fleet = get_fleet()
        traders = [
            {
                "trader_id": c.agent_id,
                "trader_name": c.settings.name,
                "ai_model": c.settings.oracle_model,
                "exchange": c.settings.exchange,
                "symbols": list(c.settings.symbols),
                "halted": c.status.halted,
            }
            for c in fleet.cycles
        ]
        traders += [
            {"trader_id": agent_id, "halted": True, "halt_reason": reason}
            for agent_id, reason in fleet.unbuilt.items()
        ]
        return traders

    @app.get("/api/status")
    async def get_status(trader_id: Optional[str] = None):
        cycle = get_cycle(trader_id)
        fleet = get_fleet()
        return {
            **cycle.status.to_dict(),
            "trading_mode": fleet.config.trading_mode.value,
            "scan_interval_seconds": cycle.settings.scan_interval_seconds,
            "symbols": list(cycle.settings.symbols),
            "restricted_account": cycle.settings.restricted_account,
        }

    @app.get("/api/account")
    async def get_account(trader_id: Optional[str] = None):
        cycle = get_cycle(trader_id)
        account = await fetch_account(cycle)
        return {"trader_id": cycle.agent_id, **_account_summary(cycle, account.snapshot())}

    @app.get("/api/positions")
    async def get_positions(trader_id: Optional[str] = None):
        cycle = get_cycle(trader_id)
        account = await fetch_account(cycle)
        return [p.model_dump(mode="json") for p in account.positions]

    @app.get("/api/decisions")
    async def get_decisions(trader_id: Optional[str] = None, limit: Optional[str] = None):
        cycle = get_cycle(trader_id)
        parsed = parse_limit(limit, 100, 1000)
        if parsed <= 0:
            raise HTTPException(status_code=400, detail="limit must be a positive integer")
        return [r.model_dump(mode="json", exclude_none=True) for r in cycle.ledger.latest_records(parsed)]

    @app.get("/api/decisions/latest")
    async def get_latest_decisions(trader_id: Optional[str] = None):
        cycle = get_cycle(trader_id)
        records = cycle.ledger.latest_records(5)
        return [r.model_dump(mode="json", exclude_none=True) for r in reversed(records)]

    @app.get("/api/statistics")
    async def get_statistics(trader_id: Optional[str] = None):
        return get_cycle(trader_id).ledger.statistics()

    @app.get("/api/equity-history")
    async def get_equity_history(trader_id: Optional[str] = None):
        return get_cycle(trader_id).ledger.equity_history()

    @app.get("/api/performance")
    async def get_performance(trader_id: Optional[str] = None):
        cycle = get_cycle(trader_id)
        snapshot = cycle.tracker.summarize(cycle.ledger.recent_closed_trades(cycle.tracker.window_size))
        return snapshot.to_dict()

    @app.get("/api/trades")
    async def get_trades(
        trader_id: Optional[str] = None,
        symbol: Optional[str] = None,
        limit: Optional[str] = None,
        from_: Optional[str] = Query(None, alias="from"),
        to: Optional[str] = None,
    ):
        cycle = get_cycle(trader_id)
        parsed = parse_limit(limit, 200, 1000)
        if parsed <= 0:
            raise HTTPException(status_code=400, detail="limit must be a positive integer")

        from_time = parse_time_param(from_)
        to_time = parse_time_param(to)
        events = cycle.ledger.trade_events(
            symbol=normalize_symbol(symbol) if symbol else None,
            start=from_time,
            end=to_time,
            limit=parsed,
            lookback=trades_lookback(parsed),
        )
        return [e.model_dump(mode="json", exclude_none=True) for e in events]

    @app.get("/api/market/kline")
    async def get_market_kline(symbol: str = "SOL", interval: str = "3m", limit: Optional[str] = None):
        parsed = parse_limit(limit, 500, 1500)
        if parsed <= 0:
            raise HTTPException(status_code=400, detail="limit must be a positive integer")
        try:
            klines = await get_fleet().market_data.get_klines(normalize_symbol(symbol), interval.lower(), parsed)
        except UpstreamError as e:
            raise HTTPException(status_code=502, detail=f"Failed to fetch klines: {e}")
        return [k.model_dump() for k in klines]

    return app


app = create_app()
