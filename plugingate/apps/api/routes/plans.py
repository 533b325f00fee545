from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from plugingate.apps.api.deps import get_db
from plugingate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from plugingate.services.plans import catalog_entry, list_plan_catalog, reset_plan_catalog_cache


router = APIRouter(prefix="/plugin", tags=["plans"], responses=DEFAULT_ERROR_RESPONSES)

_CACHE_CONTROL = "public, max-age=3600, s-maxage=1800"
_NO_CACHE = "no-cache, no-store, must-revalidate"


class ProductsResponse(BaseModel):
    tiers: list[dict[str, Any]]


@router.get("/products", response_model=ProductsResponse)
async def list_products(
    response: Response,
    refresh: bool = Query(default=False),
    db: AsyncSession = Depends(get_db),
) -> ProductsResponse:
    # Public tier catalog for the plugin upgrade screen and the pricing page.
    if refresh:
        reset_plan_catalog_cache()
    plans = await list_plan_catalog(db)
    response.headers["Cache-Control"] = _NO_CACHE if refresh else _CACHE_CONTROL
    return ProductsResponse(tiers=[catalog_entry(plan) for plan in plans])
