from fastapi import APIRouter, Depends
from typing import List

from ..core.reconciler import EnvironmentReconciler
from ..deps import get_reconciler
from ..schemas import ProjectResponse

router = APIRouter(
    prefix="/projects",
    tags=["projects"],
)


@router.get("", response_model=List[ProjectResponse])
async def list_projects(reconciler: EnvironmentReconciler = Depends(get_reconciler)):
    return await reconciler.list()


@router.get("/{name}/branches", response_model=List[str])
async def list_project_branches(name: str, reconciler: EnvironmentReconciler = Depends(get_reconciler)):
    return await reconciler.list_branches(name)
