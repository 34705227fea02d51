from fastapi import APIRouter, Depends, status
from typing import List
import logging

from ..core.reconciler import EnvironmentReconciler
from ..deps import get_reconciler
from ..schemas import (
    EnvFileResponse,
    EnvironmentBranch,
    EnvironmentCreate,
    EnvironmentResponse,
    EnvVarUpdate,
)

router = APIRouter(
    prefix="/environments",
    tags=["environments"],
)
logger = logging.getLogger(__name__)


@router.post("", response_model=EnvironmentResponse, status_code=status.HTTP_201_CREATED)
async def create_environment(
    payload: EnvironmentCreate,
    reconciler: EnvironmentReconciler = Depends(get_reconciler),
):
    return await reconciler.create(payload.repo_path, payload.branch)


@router.get("/{name}", response_model=EnvironmentResponse)
async def read_environment(name: str, reconciler: EnvironmentReconciler = Depends(get_reconciler)):
    return await reconciler.get(name)


@router.post("/{name}/start", response_model=EnvironmentResponse)
async def start_environment(name: str, reconciler: EnvironmentReconciler = Depends(get_reconciler)):
    return await reconciler.start(name)


@router.post("/{name}/stop", response_model=EnvironmentResponse)
async def stop_environment(name: str, reconciler: EnvironmentReconciler = Depends(get_reconciler)):
    return await reconciler.stop(name)


@router.post("/{name}/branch", response_model=EnvironmentResponse, status_code=status.HTTP_201_CREATED)
async def branch_environment(
    name: str,
    payload: EnvironmentBranch,
    reconciler: EnvironmentReconciler = Depends(get_reconciler),
):
    return await reconciler.branch(name, payload.branch)


@router.delete("/{name}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_environment(
    name: str,
    remove_worktree: bool = False,
    reconciler: EnvironmentReconciler = Depends(get_reconciler),
):
    await reconciler.remove(name, remove_worktree=remove_worktree)
    logger.info("Environment %s deleted via API", name)


@router.get("/{name}/env", response_model=List[EnvFileResponse])
async def read_env_files(name: str, reconciler: EnvironmentReconciler = Depends(get_reconciler)):
    return await reconciler.list_env_files(name)


@router.put("/{name}/env", response_model=EnvFileResponse)
async def update_env_var(
    name: str,
    payload: EnvVarUpdate,
    reconciler: EnvironmentReconciler = Depends(get_reconciler),
):
    return await reconciler.set_env_var(name, payload.assignment)
