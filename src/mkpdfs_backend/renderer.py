from __future__ import annotations

import importlib
import logging
from typing import Callable, List, Optional, Protocol

from .errors import RenderError
from .models import DocumentData, RenderResult
from .storage import ArtifactStorage

logger = logging.getLogger(__name__)

# The document engine itself: template id and data in, PDF bytes out.
DocumentFunction = Callable[[str, DocumentData], bytes]


class Renderer(Protocol):
    def render(
        self,
        template_id: str,
        data: DocumentData,
        *,
        job_id: str,
        user_id: str,
        send_email: Optional[List[str]] = None,
    ) -> RenderResult: ...


class StoringRenderer:
    """
    Renders with an external document function and stores the result in S3.

    Objects are written to ``{key_prefix}/{user_id}/{job_id}.pdf``, so a
    redelivered job overwrites its own artifact instead of leaving a second
    copy behind. Email recipients are accepted for interface compatibility
    but not acted on here.
    """

    def __init__(self, document_fn: DocumentFunction, storage: ArtifactStorage, key_prefix: str = "generated") -> None:
        self.document_fn = document_fn
        self.storage = storage
        self.key_prefix = key_prefix.strip("/")

    def render(
        self,
        template_id: str,
        data: DocumentData,
        *,
        job_id: str,
        user_id: str,
        send_email: Optional[List[str]] = None,
    ) -> RenderResult:
        body = self.document_fn(template_id, data)
        if not body:
            raise RenderError(f"Renderer produced an empty document for template {template_id}")

        key = f"{self.key_prefix}/{user_id}/{job_id}.pdf"
        self.storage.upload_bytes(key, body)
        url = self.storage.generate_presigned_url(key)
        if send_email:
            logger.info(f"Job {job_id} requested email delivery to {len(send_email)} recipients")
        return RenderResult(url=url, key=key, size_bytes=len(body))


def load_document_function(target: str) -> DocumentFunction:
    """
    Resolve a ``"package.module:function"`` reference to the document engine.

    Raises:
        ValueError: If the reference is empty or malformed
        ImportError: If the module cannot be imported
        AttributeError: If the module has no such attribute
    """
    module_name, sep, attr = target.partition(":")
    if not module_name or not sep or not attr:
        raise ValueError(f"Renderer target must look like 'module:function', got {target!r}")
    module = importlib.import_module(module_name)
    document_fn = getattr(module, attr)
    if not callable(document_fn):
        raise ValueError(f"Renderer target {target!r} is not callable")
    return document_fn
