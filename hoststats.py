import os
import sys
import math
import socket
import asyncio
import argparse
import subprocess
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple

import yaml
import psutil
import aiohttp
from jinja2 import Environment, FileSystemLoader, Template, TemplateError, select_autoescape

from heartbeat import HeartbeatError, effective_interval, heartbeat_age, timestamp_older_than
from sonarr import HTTP_TIMEOUT, SONARR_URL, fmt_sonarr_health

MODULE_DIR = Path(__file__).resolve().parent

# Environment variables
CONFIG_FILE = os.getenv("CONFIG_FILE", "config.json")
SECRET_FILE = os.getenv("SECRET_FILE", "secret.json")
HEARTBEAT_FILE = os.getenv("HEARTBEAT_FILE", "/tmp/wamcstats")
REBOOT_REQUIRED_FILE = os.getenv("REBOOT_REQUIRED_FILE", "/var/run/reboot-required")
SENDGRID_URL = os.getenv("SENDGRID_URL", "https://api.sendgrid.com/v3/mail/send")
UPTIME_TIMEOUT = 10

DRY_RUN_MODES = ("", "text", "html")


def log(level: str, msg: str) -> None:
    """Print log message with timestamp. Goes to stderr, stdout is for dry runs."""
    timestamp = datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S")
    print(f"[{timestamp}] [{level}] {msg}", file=sys.stderr)


class FatalError(Exception):
    """Aborts the run. No report is rendered or sent."""


# --- configuration ---------------------------------------------------------

@dataclass(frozen=True)
class Identity:
    name: str
    email: str


@dataclass(frozen=True)
class SendGridSecret:
    api_key: str
    to: Identity
    sender: Identity


@dataclass(frozen=True)
class Secret:
    sonarr_api_key: str
    url: str = ""
    sendgrid: Optional[SendGridSecret] = None


@dataclass(frozen=True)
class Config:
    monitored_partitions: Tuple[str, ...]
    minimal_free_space_fraction: float
    heartbeat_hours: float
    alert_hours: float
    secret: Secret
    reboot_required_file: str = REBOOT_REQUIRED_FILE
    sonarr_url: str = SONARR_URL

    @property
    def heartbeat_interval(self) -> timedelta:
        return timedelta(hours=self.heartbeat_hours)

    @property
    def alert_interval(self) -> timedelta:
        return timedelta(hours=self.alert_hours)


def base_dir() -> Path:
    """Directory relative config and template paths resolve against."""
    return Path(os.getenv("HOSTSTATS_HOME", MODULE_DIR))


def _resolve(path: str) -> Path:
    p = Path(path)
    return p if p.is_absolute() else base_dir() / p


def template_dirs() -> List[str]:
    """Template search path, first match wins. TEMPLATE_DIR replaces it entirely."""
    explicit = os.getenv("TEMPLATE_DIR")
    if explicit:
        return [str(_resolve(explicit))]
    return [
        str(base_dir() / "templates"),
        str(MODULE_DIR / "templates"),
        # where `pip install` puts the shipped templates
        os.path.join(sys.prefix, "share", "hoststats", "templates"),
    ]


def _read_yaml(path: str) -> Dict[str, Any]:
    # JSON is a subset of YAML, config.json / secret.json load as-is
    with open(_resolve(path), "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")
    return data


def _hours(cfg: Dict[str, Any], key: str) -> float:
    value = cfg.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise ValueError(f"{key} must be a non-negative number of hours")
    return float(value)


def _identity(block: Any, key: str) -> Identity:
    if not isinstance(block, dict) or not block.get("Email"):
        raise ValueError(f"SendGrid.{key} needs at least Email")
    return Identity(name=str(block.get("Name", "")), email=str(block["Email"]))


def parse_secret(sec: Dict[str, Any]) -> Secret:
    sonarr = sec.get("Sonarr") or {}
    api_key = sonarr.get("ApiKey") if isinstance(sonarr, dict) else None
    if not api_key:
        raise ValueError("Sonarr.ApiKey is required")

    sendgrid = None
    sg = sec.get("SendGrid")
    if sg:
        if not isinstance(sg, dict) or not sg.get("ApiKey"):
            raise ValueError("SendGrid.ApiKey is required when SendGrid is configured")
        sendgrid = SendGridSecret(
            api_key=str(sg["ApiKey"]),
            to=_identity(sg.get("To"), "To"),
            sender=_identity(sg.get("From"), "From"),
        )

    return Secret(sonarr_api_key=str(api_key), url=str(sec.get("URL") or ""), sendgrid=sendgrid)


def parse_config(cfg: Dict[str, Any], secret: Secret) -> Config:
    partitions = cfg.get("MonitoredPartitions")
    if not isinstance(partitions, list) or not partitions or not all(isinstance(p, str) for p in partitions):
        raise ValueError("MonitoredPartitions must be a non-empty list of paths")

    fraction = cfg.get("MinimalFreeSpaceFraction")
    if isinstance(fraction, bool) or not isinstance(fraction, (int, float)) or not 0 <= fraction <= 1:
        raise ValueError("MinimalFreeSpaceFraction must be a number between 0 and 1")

    heartbeat_hours = _hours(cfg, "HeartbeatHours")
    alert_hours = _hours(cfg, "AlertHours")
    # A longer alert interval would make alerts notify less often than the heartbeat
    if alert_hours > heartbeat_hours:
        raise ValueError(f"AlertHours ({alert_hours:g}) must not exceed HeartbeatHours ({heartbeat_hours:g})")

    return Config(
        monitored_partitions=tuple(partitions),
        minimal_free_space_fraction=float(fraction),
        heartbeat_hours=heartbeat_hours,
        alert_hours=alert_hours,
        secret=secret,
        reboot_required_file=str(cfg.get("RebootRequiredFile") or REBOOT_REQUIRED_FILE),
        sonarr_url=str(cfg.get("SonarrURL") or SONARR_URL),
    )


def load_config(config_file: str = CONFIG_FILE, secret_file: str = SECRET_FILE) -> Config:
    try:
        secret = parse_secret(_read_yaml(secret_file))
        return parse_config(_read_yaml(config_file), secret)
    except (OSError, yaml.YAMLError, ValueError) as e:
        raise FatalError(f"Failed to load configuration: {e}") from e


# --- collectors ------------------------------------------------------------

def human_bytes(value: float) -> str:
    """SI-formatted byte count: 512 B, 1.2 kB, 83 GB."""
    if value < 10:
        return f"{int(value)} B"
    units = ["B", "kB", "MB", "GB", "TB", "PB", "EB"]
    e = min(int(math.floor(math.log(value, 1000))), len(units) - 1)
    val = math.floor(value / 1000 ** e * 10 + 0.5) / 10
    return f"{val:.0f} {units[e]}" if val >= 10 else f"{val:.1f} {units[e]}"


def ago(then: datetime, now: Optional[datetime] = None) -> str:
    """Relative time such as '3 hours ago'."""
    now = now or datetime.now(UTC)
    seconds = (now - then).total_seconds()
    suffix = "ago"
    if seconds < 0:
        seconds, suffix = -seconds, "from now"
    if seconds < 1:
        return "now"

    steps = [
        (60, 1, "second"),
        (3600, 60, "minute"),
        (86400, 3600, "hour"),
        (7 * 86400, 86400, "day"),
        (30 * 86400, 7 * 86400, "week"),
        (365 * 86400, 30 * 86400, "month"),
    ]
    for limit, unit, name in steps:
        if seconds < limit:
            n = int(seconds // unit)
            break
    else:
        name = "year"
        if seconds < 18 * 30 * 86400:
            n = 1
        elif seconds < 2 * 365 * 86400:
            # 18 months and up reads as two years
            n = 2
        else:
            n = int(seconds // (365 * 86400))
    return f"{n} {name}{'' if n == 1 else 's'} {suffix}"


def is_nearly_full(available_fraction: float, minimal_free_space_fraction: float) -> bool:
    return available_fraction < minimal_free_space_fraction


def partition_usage(path: str) -> Tuple[int, float]:
    """(available bytes, available fraction) for the filesystem holding path."""
    usage = psutil.disk_usage(path)
    if not usage.total:
        return usage.free, 0.0
    return usage.free, (usage.total - usage.used) / usage.total


def fmt_disk_space(path: str) -> str:
    try:
        available, fraction = partition_usage(path)
    except OSError as e:
        return f"ERROR: Failed to read disk usage of {path}: {e}"
    return f"{path}: {human_bytes(available)} Available ({100 * fraction:.2f}%)"


def fmt_disk_space_partitions(config: Config) -> List[str]:
    return [fmt_disk_space(path) for path in config.monitored_partitions]


def nearly_full_partitions(config: Config) -> List[str]:
    result = []
    for path in config.monitored_partitions:
        try:
            _, fraction = partition_usage(path)
        except OSError:
            # already reported by fmt_disk_space
            continue
        if is_nearly_full(fraction, config.minimal_free_space_fraction):
            result.append(path)
    return result


def fmt_uptime() -> str:
    try:
        out = subprocess.run(
            ["uptime"],
            check=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            timeout=UPTIME_TIMEOUT,
        ).stdout
    except (OSError, subprocess.SubprocessError) as e:
        return f"ERROR: Failed to run uptime: {e}"
    return out.strip()


def reboot_required_since(path: str) -> Optional[datetime]:
    try:
        mtime = os.stat(path).st_mtime
    except FileNotFoundError:
        return None
    return datetime.fromtimestamp(mtime, UTC)


def fmt_reboot_required(path: str) -> str:
    try:
        since = reboot_required_since(path)
    except OSError as e:
        return f"WARNING: Couldn't reason about reboot: {e}"
    if since is None:
        return ""
    return f"Reboot required since {ago(since)}"


# --- report ----------------------------------------------------------------

@dataclass
class Report:
    hostname: str
    uptime: str
    reboot: str
    disk_space: List[str]
    nearly_full_partitions: List[str]
    sonarr_issues: List[str] = field(default_factory=list)
    url: str = ""

    @property
    def alert(self) -> bool:
        return bool(self.reboot) or bool(self.nearly_full_partitions)


def collect(config: Config) -> Report:
    """Everything the heartbeat decision needs. Sonarr is fetched later, only when reporting."""
    return Report(
        hostname=socket.gethostname(),
        uptime=fmt_uptime(),
        reboot=fmt_reboot_required(config.reboot_required_file),
        disk_space=fmt_disk_space_partitions(config),
        nearly_full_partitions=nearly_full_partitions(config),
        url=config.secret.url,
    )


def load_templates(template_dir: Optional[str] = None) -> Tuple[Template, Template]:
    """(text, html) report templates. Missing or broken templates are fatal."""
    env = Environment(
        loader=FileSystemLoader(template_dir or template_dirs()),
        autoescape=select_autoescape(["html"]),
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )
    try:
        return env.get_template("report.txt"), env.get_template("report.html")
    except TemplateError as e:
        raise FatalError(f"Failed to load report templates: {e}") from e


def render_report(report: Report, templates: Optional[Tuple[Template, Template]] = None) -> Tuple[str, str]:
    """Render (text, html). Template problems are fatal."""
    txt_template, html_template = templates or load_templates()
    params = {
        "hostname": report.hostname,
        "uptime": report.uptime,
        "reboot": report.reboot,
        "disk_space": report.disk_space,
        "nearly_full_partitions": report.nearly_full_partitions,
        "sonarr_issues": report.sonarr_issues,
        "url": report.url,
    }
    try:
        text = txt_template.render(params)
        html = html_template.render(params)
    except TemplateError as e:
        raise FatalError(f"Failed to render report: {e}") from e
    return text, html


# --- notification ----------------------------------------------------------

async def notify_sendgrid(session: aiohttp.ClientSession, secret: Secret, subject: str,
                          text: str, html: str, url: str = SENDGRID_URL) -> None:
    sg = secret.sendgrid
    if sg is None:
        raise FatalError("SendGrid is not configured in the secret file")

    payload = {
        "personalizations": [{"to": [{"email": sg.to.email, "name": sg.to.name}]}],
        "from": {"email": sg.sender.email, "name": sg.sender.name},
        "subject": subject,
        "content": [
            {"type": "text/plain", "value": text},
            {"type": "text/html", "value": html},
        ],
    }
    headers = {"Authorization": f"Bearer {sg.api_key}"}
    try:
        async with session.post(url, json=payload, headers=headers, timeout=HTTP_TIMEOUT) as r:
            if r.status >= 300:
                body = await r.text()
                log("ERROR", f"Response details from sendgrid: HTTP {r.status}: {body}")
                raise FatalError(f"SendGrid rejected the message: HTTP {r.status}")
            log("INFO", f"SendGrid accepted the message (HTTP {r.status})")
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise FatalError(f"Failed to send via SendGrid: {str(e) or type(e).__name__}") from e


async def deliver(dry_run: str, session: aiohttp.ClientSession, secret: Secret, subject: str,
                  text: str, html: str, notifier=notify_sendgrid) -> None:
    if dry_run == "":
        log("INFO", "Notifying via sendgrid")
        await notifier(session, secret, subject, text, html)
    elif dry_run == "html":
        log("INFO", "Dry run, outputting HTML to stdout")
        print(html)
    elif dry_run == "text":
        log("INFO", "Dry run, outputting TXT to stdout")
        print(text)
    else:
        raise FatalError(f"Invalid dry_run setting {dry_run!r}")


# --- run -------------------------------------------------------------------

async def run(config: Config, heartbeat_file: str = HEARTBEAT_FILE, dry_run: str = "",
              notifier=notify_sendgrid, template_dir: Optional[str] = None) -> bool:
    """One pass. Returns True if a report was produced."""
    if dry_run not in DRY_RUN_MODES:
        raise FatalError(f"Invalid dry_run setting {dry_run!r}")
    # Loaded before the heartbeat gate: a template failure must not advance the marker
    templates = load_templates(template_dir)

    report = collect(config)
    if report.alert:
        log("INFO", "Alert condition, reducing notification duration")
    interval = effective_interval(report.alert, config.heartbeat_interval, config.alert_interval)
    log("INFO", f"Notifying if timestamp older than {interval}")

    age = heartbeat_age(heartbeat_file)
    if age is None:
        log("INFO", "Timestamp does not exist, creating")
    else:
        log("INFO", f"Timestamp age is {age}")

    if not timestamp_older_than(heartbeat_file, interval):
        log("INFO", "Timestamp is not old enough, exiting")
        if dry_run == "":
            return False
        log("INFO", "Well, actually not exiting, because dry_run")

    async with aiohttp.ClientSession() as session:
        report.sonarr_issues = await fmt_sonarr_health(session, config.secret.sonarr_api_key, config.sonarr_url)
        text, html = render_report(report, templates)
        subject = f"Update from {report.hostname}/stats"
        await deliver(dry_run, session, config.secret, subject, text, html, notifier=notifier)
    return True


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Report host health by email, at most every few hours.")
    parser.add_argument("--heartbeat_file", default=HEARTBEAT_FILE,
                        help="Heartbeat file to indicate last run")
    parser.add_argument("--dry_run", default="", choices=DRY_RUN_MODES,
                        help="Specify 'text' or 'html'. Just outputs to stdout rather than notifying.")
    parser.add_argument("--config", default=CONFIG_FILE, help="Configuration file (JSON or YAML)")
    parser.add_argument("--secret", default=SECRET_FILE, help="Secrets file (JSON or YAML)")
    parser.add_argument("--status", action="store_true",
                        help="Print the heartbeat file's age and exit")
    return parser.parse_args(argv)


def status(heartbeat_file: str) -> int:
    age = heartbeat_age(heartbeat_file)
    if age is None:
        print(f"Heartbeat file {heartbeat_file} does not exist")
        return 1
    print(f"Last notification {age} ago ({heartbeat_file})")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        if args.status:
            return status(args.heartbeat_file)
        config = load_config(args.config, args.secret)
        asyncio.run(run(config, heartbeat_file=args.heartbeat_file, dry_run=args.dry_run))
    except (FatalError, HeartbeatError) as e:
        log("ERROR", f"{e}\n{traceback.format_exc()}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
