from fastapi import APIRouter

from clusterdeck.api.routes import credentials, kubernetes, proxy


def build_api_router(prefix: str) -> APIRouter:
    api_router = APIRouter(prefix=prefix)
    # cluster routes first: the proxy's catch-all kind segment would shadow them
    api_router.include_router(kubernetes.router)
    api_router.include_router(credentials.backup_router)
    api_router.include_router(credentials.monitoring_router)
    api_router.include_router(proxy.router)
    return api_router
