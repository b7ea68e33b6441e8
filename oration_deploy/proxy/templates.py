"""ProxyConfigGenerator — writes nginx, systemd and host descriptor files."""

from __future__ import annotations

import logging
from pathlib import Path

import yaml

from oration_deploy.config import (
    DEFAULT_VHOST_ENABLED,
    INSTALL_DIR,
    NGINX_CONF_PATH,
    NGINX_LOG_DIR,
    SERVICE_NAME,
    SYSTEM_PACKAGES,
    UNIT_PATH,
    UPSTREAM_HOST,
    VHOST_AVAILABLE_PATH,
    VHOST_ENABLED_PATH,
    WEB_ROOT,
)
from oration_deploy.config_manager import DeploySettings
from oration_deploy.proxy.access_log import LOG_FORMAT_NAME, log_format_directive

logger = logging.getLogger(__name__)

_NGINX_CONF_TEMPLATE = """\
user www-data;
worker_processes auto;
pid /run/nginx.pid;
include /etc/nginx/modules-enabled/*.conf;

events {{
    worker_connections 768;
}}

http {{
    sendfile on;
    tcp_nopush on;
    types_hash_max_size 2048;
    server_tokens off;

    include /etc/nginx/mime.types;
    default_type application/octet-stream;

    {log_format}

    access_log {log_dir}/access.log {log_format_name};
    error_log {log_dir}/error.log;

    gzip on;

    include /etc/nginx/conf.d/*.conf;
    include /etc/nginx/sites-enabled/*;
}}
"""

_VHOST_TEMPLATE = """\
upstream {service} {{
    server {upstream_host}:{upstream_port};
}}

server {{
    listen 80 default_server;
    listen [::]:80 default_server;
    server_name {server_name};

    root {web_root};
    index index.html;

    access_log {log_dir}/{service}.access.log {log_format_name};

    location / {{
        try_files $uri $uri/ =404;
    }}

    location /{service} {{
        proxy_pass http://{service};
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
    }}
}}
"""

_UNIT_TEMPLATE = """\
[Unit]
Description=Oration comment server
After=network.target

[Service]
Type=simple
WorkingDirectory={install_dir}
EnvironmentFile={install_dir}/.env
Environment=ROCKET_ENV=production
Environment=ROCKET_ADDRESS={upstream_host}
Environment=ROCKET_PORT={upstream_port}
ExecStart={install_dir}/{service}
Restart=on-failure

[Install]
WantedBy=multi-user.target
"""


class ProxyConfigGenerator:
    """Render the edge and service definitions from :class:`DeploySettings`."""

    def __init__(self, settings: DeploySettings | None = None) -> None:
        self.settings = settings or DeploySettings()

    def _values(self) -> dict[str, str]:
        return {
            "service": SERVICE_NAME,
            "upstream_host": UPSTREAM_HOST,
            "upstream_port": str(self.settings.upstream_port),
            "server_name": self.settings.server_name,
            "web_root": str(WEB_ROOT),
            "install_dir": str(INSTALL_DIR),
            "log_dir": str(NGINX_LOG_DIR),
            "log_format": log_format_directive(),
            "log_format_name": LOG_FORMAT_NAME,
        }

    def render_nginx_conf(self) -> str:
        return _NGINX_CONF_TEMPLATE.format(**self._values())

    def render_vhost(self) -> str:
        return _VHOST_TEMPLATE.format(**self._values())

    def render_unit(self) -> str:
        return _UNIT_TEMPLATE.format(**self._values())

    def render_descriptor(self) -> str:
        """Host descriptor YAML pointing at the generated files."""
        data = {
            "packages": list(SYSTEM_PACKAGES),
            "package_policy": "latest",
            "upgrade": True,
            "cache_valid_time": self.settings.apt_cache_valid_time,
            "proxy_config": {"src": "nginx.conf", "dest": str(NGINX_CONF_PATH), "mode": "0644"},
            "unit": {"src": f"{SERVICE_NAME}.service", "dest": str(UNIT_PATH), "name": SERVICE_NAME},
            "vhost": {
                "src": "nginx.vhost.conf",
                "available": str(VHOST_AVAILABLE_PATH),
                "enabled": str(VHOST_ENABLED_PATH),
                "retire": [str(DEFAULT_VHOST_ENABLED)],
            },
            "artifacts": {"install_dir": str(INSTALL_DIR), "web_root": str(WEB_ROOT)},
            "log_dir": {"path": str(NGINX_LOG_DIR), "mode": "a+rx", "recurse": True},
        }
        return yaml.safe_dump(data, sort_keys=False)

    def generate(self, output_dir: str | Path) -> list[Path]:
        """Write all files into *output_dir*.

        Returns the generated paths.
        """
        out = Path(output_dir)
        out.mkdir(parents=True, exist_ok=True)
        files = {
            "nginx.conf": self.render_nginx_conf(),
            "nginx.vhost.conf": self.render_vhost(),
            f"{SERVICE_NAME}.service": self.render_unit(),
            "host.yaml": self.render_descriptor(),
        }
        written = []
        for name, content in files.items():
            path = out / name
            path.write_text(content, encoding="utf-8")
            written.append(path)
            logger.info("Generated %s", path)
        return written
