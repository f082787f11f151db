"""Linear helper endpoints used by the submission form."""

from typing import Optional

import httpx
from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from errors import ExporterError
from services.linear_client import LinearClient

router = APIRouter()


class LinearKeyRequest(BaseModel):
    """Body carrying a Linear API key."""

    model_config = ConfigDict(populate_by_name=True)

    linear_api_key: Optional[str] = Field(None, alias="linearApiKey")


@router.post("/test")
async def test_linear_key(body: LinearKeyRequest):
    """Validate a Linear API key by querying the viewer."""
    if not body.linear_api_key:
        return JSONResponse(
            status_code=400,
            content={"authenticated": False, "error": "linearApiKey is required in the request body"},
        )

    client = LinearClient(body.linear_api_key)
    try:
        return await client.test_auth()
    finally:
        await client.close()


@router.post("/teams")
async def list_linear_teams(body: LinearKeyRequest):
    """List teams visible to a Linear API key."""
    if not body.linear_api_key:
        return JSONResponse(status_code=400, content={"error": "linearApiKey is required in the request body"})

    client = LinearClient(body.linear_api_key)
    try:
        return {"teams": await client.get_teams()}
    except (ExporterError, httpx.HTTPError) as e:
        return JSONResponse(status_code=400, content={"error": str(e)})
    finally:
        await client.close()
