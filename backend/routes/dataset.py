"""Dataset import/export/merge endpoints."""

from fastapi import APIRouter, HTTPException, Response

from backend import storage
from character_manager.dataset import DatasetService
from character_manager.models import dump

from .models import ResolveConflictBody

router = APIRouter()


def _service() -> DatasetService:
    return DatasetService(storage.repository())


@router.get("/dataset/export")
async def export_dataset(sort: bool | None = None):
    """Export the whole dataset as JSON. Sorted per the export_sorted setting by default."""
    if sort is None:
        sort = storage.get_config()["export_sorted"]
    return Response(await _service().export_dataset(sort=sort), media_type="application/json")


@router.post("/dataset/import")
async def import_dataset(body: dict):
    """Replace every collection with the payload's."""
    report = await _service().import_dataset(body)
    if not report.success:
        raise HTTPException(400, "Import failed; stored data is unchanged")
    return dump(report)


@router.post("/dataset/merge")
async def merge_dataset(body: dict):
    """Merge the payload into stored data and report added/updated/conflicted."""
    report = await _service().merge_dataset(body)
    if not report.success:
        raise HTTPException(400, "Merge failed; stored data is unchanged")
    return dump(report)


@router.post("/dataset/conflicts/resolve")
async def resolve_conflict(body: ResolveConflictBody):
    """Apply one keep_existing / use_imported / skip decision."""
    try:
        char = await _service().resolve_conflict(body.conflict, body.field, body.choice)
    except ValueError as e:
        raise HTTPException(400, str(e))
    if not char:
        raise HTTPException(404, "Character not found")
    return dump(char)
