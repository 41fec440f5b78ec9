"""
Multimodal Uploads
==================
Turns image uploads attached to a run into `image_url` content parts that
vision-capable chat models accept.

  stored-file → read from the FileStore, inlined as a base64 data URL
  url         → passed through as-is

A stored file that cannot be read falls back to the upload's inline `data`
when it has one; otherwise it is skipped with a warning. Non-image uploads
are ignored.
"""
import base64
import logging

from .collaborators import FileStore

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_MIME = "image/jpeg"


def get_image_uploads(uploads: list[dict] | None) -> list[dict]:
    return [u for u in (uploads or []) if str(u.get("mime") or "").startswith("image/")]


def _data_url(mime: str, contents: bytes) -> str:
    return f"data:{mime};base64,{base64.b64encode(contents).decode('ascii')}"


async def build_image_content(
    uploads: list[dict] | None,
    file_store: FileStore | None,
    chatflow_id: str,
    chat_id: str,
) -> list[dict]:
    image_content = []

    for upload in get_image_uploads(uploads):
        kind = upload.get("type")
        mime = upload.get("mime") or DEFAULT_IMAGE_MIME

        if kind == "url":
            image_content.append({"type": "image_url", "image_url": {"url": upload.get("data") or ""}})
            continue

        if kind != "stored-file":
            logger.warning("[multimodal] Unknown upload type %r — skipped", kind)
            continue

        contents = None
        if file_store is not None:
            try:
                contents = await file_store.get_file(upload.get("name", ""), chatflow_id, chat_id)
            except Exception as exc:
                logger.warning("[multimodal] Could not read %r: %s", upload.get("name"), exc)

        if contents:
            image_content.append({"type": "image_url", "image_url": {"url": _data_url(mime, contents)}})
        elif upload.get("data"):
            image_content.append({"type": "image_url", "image_url": {"url": upload["data"]}})
        else:
            logger.warning("[multimodal] Skipping upload %r with no readable data", upload.get("name"))

    return image_content
