from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse

# Account and financial data must never be cached by browsers or proxies
NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
    "Expires": "0",
}


def no_store_json(data: Any, status_code: int = 200, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    """Return JSONResponse with no-store caching headers."""
    return JSONResponse(content=data, status_code=status_code, headers={**NO_STORE_HEADERS, **(headers or {})})
