import hmac
import logging
from typing import Tuple

from fastapi import HTTPException, Request


def extract_secret(request: Request) -> Tuple[str, str]:
    """Extract the shared secret from header, bearer token or query string."""
    header_secret = request.headers.get("x-job-secret", "").strip()
    if header_secret:
        return header_secret, "header"

    authorization = request.headers.get("authorization", "").strip()
    if authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
        if token:
            return token, "bearer"

    query_secret = request.query_params.get("secret", "").strip()
    if query_secret:
        return query_secret, "query"

    return "", "missing"


def ensure_request_authorized(request: Request, job_secret: str, logger: logging.Logger) -> str:
    """Reject the request with 401 unless it carries ``job_secret``; no-op when unset."""
    if not job_secret:
        return "not_required"

    provided, source = extract_secret(request)
    if not provided or not hmac.compare_digest(provided, job_secret):
        logger.warning(
            "Unauthorized on %s (source=%s, client=%s)",
            request.url.path,
            source,
            request.client.host if request.client else "unknown",
        )
        raise HTTPException(status_code=401, detail="Unauthorized")

    logger.debug("Auth OK on %s (source=%s)", request.url.path, source)
    return source
