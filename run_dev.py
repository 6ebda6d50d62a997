# run_dev.py
"""
Local development launcher for FastAPI.
Equivalent to: `uvicorn trafficbot.app:app --reload --host 0.0.0.0 --port 8000`
"""

import uvicorn

from trafficbot.settings import settings

if __name__ == "__main__":
    uvicorn.run(
        "trafficbot.app:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
