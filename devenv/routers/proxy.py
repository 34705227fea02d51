from fastapi import APIRouter, Depends
from typing import Any, Dict, List

from ..core.reconciler import EnvironmentReconciler
from ..deps import get_reconciler

router = APIRouter(
    prefix="/proxy",
    tags=["proxy"],
)


@router.get("/routes", response_model=List[Dict[str, Any]])
async def list_proxy_routes(reconciler: EnvironmentReconciler = Depends(get_reconciler)):
    return await reconciler.list_routes()
