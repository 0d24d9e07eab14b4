from dashboard_server.libs.config import Config

_config = Config()
_root_config = _config.root_data
_ip_bind = _root_config.get("ip-bind", "0.0.0.0")
_port = _root_config.get("port", 5000)
_max_workers = _root_config.get("max-workers", 1)
_request_timeout = _root_config.get("request-timeout", 30)

bind = f"{_ip_bind}:{_port}"
worker_class = "uvicorn.workers.UvicornWorker"
workers = int(_max_workers)
accesslog = "-"
# Leave headroom over the per-request upstream timeout.
timeout = int(_request_timeout) * 2
