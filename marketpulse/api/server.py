"""
FastAPI server - read and command surface over a running TradingEngine.

Endpoints:
- GET    /api/health              - engine state and feed indicator
- GET    /api/snapshot            - full market snapshot
- POST   /api/pair                - switch the selected pair
- POST   /api/orders              - place a simulated order
- GET    /api/orders              - open orders
- DELETE /api/orders/{order_id}   - cancel an open order
- POST   /api/notice/dismiss      - clear the simulated-data notice
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from marketpulse import __version__
from marketpulse.core.logger import get_logger
from marketpulse.exchange.exceptions import OrderError, UnknownOrderError
from marketpulse.market.models import Order, Side

logger = get_logger("api_server")


class PairSelection(BaseModel):
    pair_id: str = Field(min_length=1)


class OrderRequest(BaseModel):
    side: Side
    pair_id: str = Field(min_length=1)
    price: float
    quantity: float


def _order_dict(order: Order) -> Dict[str, Any]:
    return {
        "order_id": order.order_id,
        "pair_id": order.pair_id,
        "side": order.side.value,
        "price": order.price,
        "quantity": order.quantity,
        "notional": order.notional,
        "created_at": order.created_at,
        "status": order.status.value,
    }


class ApiServer:
    """Thin HTTP adapter; every handler delegates to the engine."""

    def __init__(self):
        self.app = FastAPI(
            title="MarketPulse",
            version=__version__,
            docs_url="/api/docs",
        )
        self._engine = None
        self._setup_routes()

    def set_engine(self, engine) -> None:
        """Inject the trading engine reference."""
        self._engine = engine

    def _require_engine(self):
        if self._engine is None:
            raise HTTPException(status_code=503, detail="Engine not running")
        return self._engine

    def _setup_routes(self) -> None:

        @self.app.get("/api/health")
        async def health():
            if self._engine is None:
                return {"status": "initializing"}
            return {"status": "ok", **self._engine.health()}

        @self.app.get("/api/snapshot")
        async def snapshot():
            return self._require_engine().get_snapshot().to_dict()

        @self.app.post("/api/pair")
        async def select_pair(body: PairSelection):
            engine = self._require_engine()
            try:
                changed = engine.select_pair(body.pair_id)
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            return {"selected_pair": engine.books.selected_pair, "changed": changed}

        @self.app.get("/api/orders")
        async def list_orders() -> List[Dict[str, Any]]:
            return [_order_dict(o) for o in self._require_engine().open_orders()]

        @self.app.post("/api/orders")
        async def place_order(body: OrderRequest):
            engine = self._require_engine()
            try:
                order = engine.place_order(body.side, body.pair_id, body.price, body.quantity)
            except OrderError as e:
                logger.info("Order rejected", error_type=type(e).__name__, error=str(e))
                raise HTTPException(status_code=400, detail=str(e))
            return _order_dict(order)

        @self.app.delete("/api/orders/{order_id}")
        async def cancel_order(order_id: str):
            engine = self._require_engine()
            try:
                order = engine.cancel_order(order_id)
            except UnknownOrderError as e:
                raise HTTPException(status_code=404, detail=str(e))
            except OrderError as e:
                raise HTTPException(status_code=400, detail=str(e))
            return _order_dict(order)

        @self.app.post("/api/notice/dismiss")
        async def dismiss_notice():
            self._require_engine().dismiss_notice()
            return {"notice": None}


def create_app(engine: Optional[Any] = None) -> FastAPI:
    """Build the FastAPI app bound to ``engine``."""
    server = ApiServer()
    server.set_engine(engine)
    return server.app
