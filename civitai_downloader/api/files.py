from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from civitai_downloader.models import ExportEntry
from civitai_downloader.storage import ExportStorage

router = APIRouter()


def get_storage(request: Request) -> ExportStorage:
    return request.app.state.storage


@router.get("", response_model=list[ExportEntry])
async def list_files(
    path: str = Query("", description="Directory inside the export tree, relative to its root."),
    storage: ExportStorage = Depends(get_storage),
) -> list[ExportEntry]:
    try:
        folder = storage.resolve(path)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if not folder.is_dir():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Directory {path!r} not found")
    return storage.list_entries(path)
