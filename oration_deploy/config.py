"""Global configuration: layout names, system paths, constants."""

from pathlib import Path

# Fixed names inside the deployment directory
BACKEND_EXECUTABLE = "oration"
CONFIG_FILE = "oration.yaml"
SECRETS_FILE = ".env"
DATA_FILE = "oration.db"

# The complete Artifact Set staged into the deployment directory
ARTIFACT_FILES = (BACKEND_EXECUTABLE, CONFIG_FILE, SECRETS_FILE, DATA_FILE)

# Default locations relative to the project root
DEFAULT_DEPLOY_DIR = Path("deploy")
DEFAULT_PUBLIC_DIR = Path("public")
DEFAULT_FRONTEND_DIR = Path("app")

# Manifest written beside (never inside) the deployment directory
MANIFEST_SUFFIX = ".manifest.json"

# Backend build
BUILD_TARGET = "x86_64-unknown-linux-musl"
BUILDER_MOUNT = "/home/rust/src"
FRONTEND_BUILD_COMMAND = ("npm", "run", "deploy")

# Permission contract: owner rwx, group r-x, others nothing
EXECUTABLE_MODE = "u=rwx,g=rx,o="
SECRET_MODE = 0o600

# Files that must never ship in the public tree
SOURCE_MAP_PATTERNS = ("*.map",)

# Field substitutions applied to the staged oration.yaml
CONFIG_OVERRIDES = {"host": "http://localhost/"}

# Package index refresh validity window (seconds)
APT_CACHE_VALID_TIME = 86400
APT_UPDATE_STAMP = Path("/var/lib/apt/periodic/update-success-stamp")

SYSTEM_PACKAGES = (
    "apt-transport-https",
    "build-essential",
    "pkg-config",
    "libssl-dev",
    "curl",
    "git",
    "nginx",
    "vim",
    "sqlite3",
    "libsqlite3-dev",
)

# Host paths
SERVICE_NAME = "oration"
UNIT_PATH = Path("/etc/systemd/system/oration.service")
INSTALL_DIR = Path("/opt/oration")
WEB_ROOT = Path("/var/www/oration")
NGINX_CONF_PATH = Path("/etc/nginx/nginx.conf")
VHOST_AVAILABLE_PATH = Path("/etc/nginx/sites-available/oration.conf")
VHOST_ENABLED_PATH = Path("/etc/nginx/sites-enabled/000-oration")
DEFAULT_VHOST_ENABLED = Path("/etc/nginx/sites-enabled/default")
NGINX_LOG_DIR = Path("/var/log/nginx")
NGINX_LOG_MODE = "a+rx"

# Upstream backend listener
UPSTREAM_HOST = "127.0.0.1"
UPSTREAM_PORT = 8000
