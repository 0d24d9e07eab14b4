import uvicorn

from dashboard_server.libs.config import Config

_config = Config()
_root_config = _config.root_data
_ip_bind = _root_config.get("ip-bind", "0.0.0.0")
_port = _root_config.get("port", 5000)
_max_workers = _root_config.get("max-workers", 1)


if __name__ == "__main__":
    if int(_max_workers) > 1 and not (_root_config.get("redis") or {}).get("enabled"):
        print(
            "⚠️  Running multiple workers without Redis: rate limits, dedup keys and cache are per worker",
        )

    # Application logs use simple-logger; uvicorn keeps its default access/error logging.
    uvicorn.run(
        "dashboard_server.app:FASTAPI_APP",
        host=_ip_bind,
        port=int(_port),
        workers=int(_max_workers),
        reload=False,
    )
