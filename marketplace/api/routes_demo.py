from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from marketplace.core.config import get_settings
from marketplace.core.errors import NotAuthorized, NotFound
from marketplace.core.security import Actor, Capability, get_actor
from marketplace.demo.catalog import seed_demo_catalog
from marketplace.persistence.pg import get_session

router = APIRouter(tags=["demo"])


@router.post("/demo/seed")
def demo_seed(actor: Actor = Depends(get_actor), session: Session = Depends(get_session)):
    settings = get_settings()
    if settings.env.lower() != "dev":
        raise NotFound("demo seeding is only available in dev")
    if not actor.can(Capability.SEED_CATALOG):
        raise NotAuthorized("admin role required to seed the demo catalog", code="NOT_AUTHORIZED")
    return seed_demo_catalog(session, low_stock_threshold=settings.low_stock_threshold)
