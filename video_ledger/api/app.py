"""
HTTP application.

Exposes the ledger's read and write operations. Routing and transport live
here; every route delegates to the wired components.
"""

from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Query, Request, status

from .errors import install_error_handlers
from .schemas import ManualCostEvent, RevenueUpdate
from .. import __version__
from ..config.loader import LedgerConfig
from ..core.aggregator import LedgerNotFoundError
from ..services import LedgerServices, build_services


def _services(request: Request) -> LedgerServices:
    return request.app.state.services


def create_app(config: Optional[LedgerConfig] = None, services: Optional[LedgerServices] = None) -> FastAPI:
    """Create the HTTP app around an explicit component graph."""
    services = services or build_services(config or LedgerConfig())

    app = FastAPI(title="Video Ledger", version=__version__)
    app.state.services = services
    install_error_handlers(app)

    @app.get("/costs/video/{video_id}")
    def get_video_costs(video_id: str, request: Request) -> Dict[str, Any]:
        """Full cost breakdown for a single video, with ROI once revenue is known."""
        breakdown = _services(request).aggregator.get_video_cost_breakdown(video_id)
        if breakdown is None:
            raise LedgerNotFoundError(video_id)
        return breakdown.to_dict()

    @app.get("/costs/channel/{channel_id}/summary")
    def get_channel_summary(
        channel_id: str,
        request: Request,
        days: int = Query(30, ge=1),
    ) -> Dict[str, Any]:
        return _services(request).aggregator.get_channel_cost_summary(channel_id, days=days).to_dict()

    @app.post("/costs/events", status_code=status.HTTP_201_CREATED)
    def post_cost_event(body: ManualCostEvent, request: Request) -> Dict[str, Any]:
        """Record a cost for producers that do not publish to the event log."""
        event = _services(request).recorder.record(
            body.video_id,
            body.channel_id,
            body.category,
            body.provider,
            body.units,
            body.unit_label,
            body.pricing_key,
            metadata=body.metadata,
        )
        return event.to_dict()

    @app.patch("/costs/video/{video_id}/revenue")
    def patch_revenue(video_id: str, body: RevenueUpdate, request: Request) -> Dict[str, Any]:
        record = _services(request).revenue.update_revenue(
            video_id, body.revenue_usd, body.views, channel_id=body.channel_id,
        )
        return {"ok": True, **record.to_dict()}

    @app.get("/costs/pricing")
    def get_pricing(request: Request) -> List[Dict[str, Any]]:
        return [
            {
                "key": entry.key,
                "provider": entry.provider,
                "type": entry.unit_type,
                "priceUsd": float(entry.price_usd),
                "unit": entry.unit_label,
            }
            for entry in _services(request).pricing.entries()
        ]

    @app.get("/costs/alerts")
    def get_alerts(request: Request) -> Dict[str, Any]:
        """Budget status per scope, plus any alerts that fired on this poll."""
        budgets = _services(request).budgets
        fired = budgets.check()
        return {
            "alerts": [alert.to_dict() for alert in fired],
            "scopes": [scope.to_dict() for scope in budgets.status()],
        }

    @app.get("/costs/health")
    def health(request: Request) -> Dict[str, Any]:
        return {
            "status": "ok",
            "service": "video-ledger",
            "version": __version__,
            "pricingGaps": _services(request).pricing.gap_counts(),
        }

    return app
