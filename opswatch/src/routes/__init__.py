from opswatch.src.routes.health import router as health_router
from opswatch.src.routes.monitor import router as monitor_router
from opswatch.src.routes.pipelines import router as pipelines_router
from opswatch.src.routes.realtime import router as realtime_router

__all__ = ["health_router", "monitor_router", "pipelines_router", "realtime_router"]
