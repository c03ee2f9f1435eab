"""Pass-through calls to the Figma REST API using the caller's access token."""
import logging
from typing import List, Optional

import httpx

from errors import InternalError, ValidationError
from settings import FIGMA_API_BASE

logger = logging.getLogger("CollabBackend.figma")


def _check_params(file_key: Optional[str], node_id: Optional[str], access_token: Optional[str]):
    if not file_key or not node_id or not access_token:
        raise ValidationError("Missing parameters")


async def _get_json(url: str, access_token: str, params: dict) -> dict:
    try:
        async with httpx.AsyncClient() as client:
            resp = await client.get(url, params=params, headers={"X-Figma-Token": access_token})
    except httpx.HTTPError as e:
        logger.error(f"Figma request to {url} failed: {e}")
        raise InternalError("Figma API error")
    if resp.status_code != 200:
        logger.error(f"Figma request to {url} returned {resp.status_code}")
        raise InternalError("Figma API error")
    return resp.json()


async def fetch_layers(file_key: str, node_id: str, access_token: str) -> List[dict]:
    _check_params(file_key, node_id, access_token)
    data = await _get_json(f"{FIGMA_API_BASE}/files/{file_key}/nodes", access_token, {"ids": node_id})
    node = ((data.get("nodes") or {}).get(node_id) or {}).get("document")
    if not node or not node.get("children"):
        return []
    return [{"id": layer.get("id"), "name": layer.get("name"), "type": layer.get("type")} for layer in node["children"]]


async def fetch_image(file_key: str, node_id: str, access_token: str) -> dict:
    _check_params(file_key, node_id, access_token)
    data = await _get_json(f"{FIGMA_API_BASE}/images/{file_key}", access_token, {"ids": node_id, "format": "png"})
    return {"imageUrl": (data.get("images") or {}).get(node_id)}
