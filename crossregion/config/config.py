import os

from dotenv import load_dotenv

# Pick up a local .env before any setting is read.
load_dotenv()


def _env_str(name: str, default: str) -> str:
    return os.getenv(name, default)


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: list[str]) -> list[str]:
    value = os.getenv(name)
    if not value:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]


# --- Feature flags ---
FEATURE_SECURITY_GROUPS = _env_bool("FEATURE_SECURITY_GROUPS", True)
FEATURE_ICMP_PROBE = _env_bool("FEATURE_ICMP_PROBE", True)

# --- Regions and resource naming ---
REGIONS = _env_list(
    "CROSSREGION_REGIONS",
    ["us-east-1", "us-west-1", "eu-west-1", "ap-northeast-1"],
)
TAG_KEY = _env_str("CROSSREGION_TAG_KEY", "test")
TAG_VALUE = _env_str("CROSSREGION_TAG_VALUE", "crossregion")
RESOURCE_PREFIX = _env_str("CROSSREGION_RESOURCE_PREFIX", "crossregion")
SECURITY_GROUP_DESCRIPTION = "Security group for testing AWS cross-region network"

# --- Instances ---
INSTANCE_TYPE = _env_str("CROSSREGION_INSTANCE_TYPE", "t2.micro")
# Amazon Linux 2023; the newest matching image is used.
AMI_NAME = _env_str("CROSSREGION_AMI_NAME", "al2023-ami-2023.*-kernel-6.1-x86_64")
AMI_OWNER = _env_str("CROSSREGION_AMI_OWNER", "amazon")
AMI_ARCHITECTURE = "x86_64"
AMI_VIRTUALIZATION_TYPE = "hvm"

# Explicit bound on every instance state wait: delay * max_attempts seconds.
WAITER_DELAY = _env_int("CROSSREGION_WAITER_DELAY", 15)
WAITER_MAX_ATTEMPTS = _env_int("CROSSREGION_WAITER_MAX_ATTEMPTS", 40)

# 0 means one worker per region.
MAX_CONCURRENCY = _env_int("CROSSREGION_MAX_CONCURRENCY", 0)

# --- Local files ---
KEY_DIR = _env_str("CROSSREGION_KEY_DIR", "/tmp")
HOSTS_FILE = _env_str("CROSSREGION_HOSTS_FILE", "/tmp/crossregion-hosts.json")
LOG_DIR = _env_str("CROSSREGION_LOG_DIR", "/tmp/crossregion-logs")
REPORT_FILE = _env_str("CROSSREGION_REPORT_FILE", "/tmp/crossregion-report.txt")

# --- Remote nodes ---
REMOTE_USER = _env_str("CROSSREGION_REMOTE_USER", "ec2-user")
REMOTE_DIR = _env_str("CROSSREGION_REMOTE_DIR", "/home/ec2-user/crossregion")
REMOTE_HOSTS_FILE = f"{REMOTE_DIR}/hosts.json"
REMOTE_LOG_FILE = f"{REMOTE_DIR}/probe.log"
SSH_TIMEOUT = _env_float("CROSSREGION_SSH_TIMEOUT", 30.0)
# The agent needs Python 3.10+, newer than the image's system python3.
AGENT_PYTHON = _env_str("CROSSREGION_AGENT_PYTHON", "python3.11")
AGENT_SETUP_COMMAND = _env_str(
    "CROSSREGION_AGENT_SETUP_COMMAND",
    f"sudo dnf install -y -q {AGENT_PYTHON} {AGENT_PYTHON}-pip && "
    f"{AGENT_PYTHON} -m pip install --user --quiet "
    "fastapi uvicorn httpx pydantic python-dotenv aioboto3 paramiko",
)
# Seconds allowed for a freshly started agent to answer its health check.
AGENT_START_TIMEOUT = _env_int("CROSSREGION_AGENT_START_TIMEOUT", 20)

# --- Probe agent ---
PROBE_PORT = _env_int("CROSSREGION_PROBE_PORT", 3000)
PROBE_PATH = _env_str("CROSSREGION_PROBE_PATH", "/test")
PROBE_BODY = "ok"
SWEEP_INTERVAL = _env_float("CROSSREGION_SWEEP_INTERVAL", 5.0)
PROBE_TIMEOUT = _env_float("CROSSREGION_PROBE_TIMEOUT", 10.0)
PING_COUNT = _env_int("CROSSREGION_PING_COUNT", 3)
PING_TIMEOUT = _env_int("CROSSREGION_PING_TIMEOUT", 2)

# --- Diagnostics ---
LOG_FILE = _env_str("CROSSREGION_LOG_FILE", "crossregion.log")
LOG_LEVEL = _env_str("CROSSREGION_LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(filename)s:%(funcName)s: %(message)s"
