#!/usr/bin/env python3
"""Query abuse.ch URLhaus / ThreatFox by tag, filter locally, write results."""
from __future__ import annotations
import argparse
import csv
import json
import logging
import os
import time
from dataclasses import dataclass, asdict, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, ClassVar, Dict, Iterable, Iterator, List, Optional, Tuple, Type, Union

import requests
import yaml

ISO_FMT = "%Y-%m-%dT%H:%M:%SZ"
TS_FMT = "%Y-%m-%d %H:%M:%S"
BOUND_FMT = "%Y%m%d%H%M%S"
DAY_FMT = "%Y%m%d"

URLHAUS_TAG_URL = "https://urlhaus-api.abuse.ch/v1/tag"
THREATFOX_API_URL = "https://threatfox-api.abuse.ch/api/v1/"
DEFAULT_UA = "abusefeed/0.1 (+https://abuse.ch)"
DEFAULT_FEED = "urlhaus"

JSON_FILE = "result.json"
CSV_FILE = "result.csv"

# --------------- runtime globals ---------------
logger = logging.getLogger("abusefeed")
_SAVE_RAW_DIR: Optional[Path] = None
HTTP_DEBUG = False


# ---------------- errors ----------------
class AbuseFeedError(Exception):
    """Base class for fatal errors; ``main`` turns these into exit code 1."""


class TransportError(AbuseFeedError):
    pass


class DecodeError(AbuseFeedError):
    pass


class OutputError(AbuseFeedError):
    pass


class ConfigError(AbuseFeedError):
    pass


# ---------------- time helpers ----------------
def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime(ISO_FMT)


def today_str(now: Optional[datetime] = None) -> str:
    return (now or now_utc()).strftime(DAY_FMT)


def parse_ts(raw: str) -> datetime:
    # feeds append " UTC"; only the first 19 characters carry the value
    return datetime.strptime(raw[:19], TS_FMT).replace(tzinfo=timezone.utc)


def format_ts(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime(TS_FMT)


def utc_text(dt: datetime) -> str:
    return f"{format_ts(dt)} UTC"


def parse_bound(day: str, now: datetime) -> datetime:
    """Midnight UTC of a ``YYYYMMDD`` day, or ``now`` if it does not parse."""
    try:
        return datetime.strptime(f"{day}000000", BOUND_FMT).replace(tzinfo=timezone.utc)
    except (TypeError, ValueError):
        logger.warning("Unparsable date bound %r; using current time %s", day, iso(now))
        return now


@dataclass(frozen=True)
class DateRange:
    start: datetime
    end: datetime

    @classmethod
    def from_days(cls, date_from: Optional[str], date_to: Optional[str], *, now: Optional[datetime] = None) -> "DateRange":
        now = now or now_utc()
        today = today_str(now)
        return cls(
            parse_bound(today if date_from is None else date_from, now),
            parse_bound(today if date_to is None else date_to, now),
        )

    def contains(self, ts: datetime) -> bool:
        return self.start <= ts <= self.end


# ---------------- decode helpers ----------------
def _field(raw: Dict[str, Any], key: str) -> Any:
    try:
        return raw[key]
    except KeyError:
        raise DecodeError(f"missing field '{key}'") from None


def _str(raw: Dict[str, Any], key: str) -> str:
    value = _field(raw, key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise DecodeError(f"field '{key}' expected string, got {type(value).__name__}")
    return value


def _int(raw: Dict[str, Any], key: str) -> int:
    value = _field(raw, key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise DecodeError(f"field '{key}' expected integer, got {type(value).__name__}")
    return value


def _ts(raw: Dict[str, Any], key: str) -> datetime:
    value = _field(raw, key)
    if not isinstance(value, str):
        raise DecodeError(f"field '{key}' expected timestamp, got {type(value).__name__}")
    try:
        return parse_ts(value)
    except ValueError as e:
        raise DecodeError(f"field '{key}' has invalid timestamp {value!r}") from e


def _tags(raw: Dict[str, Any], key: str = "tags") -> Tuple[str, ...]:
    value = _field(raw, key)
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(t, str) for t in value):
        raise DecodeError(f"field '{key}' expected list of strings")
    return tuple(value)


def _entry_list(raw: Dict[str, Any], key: str) -> List[Dict[str, Any]]:
    value = raw.get(key)
    if not isinstance(value, list):
        status = raw.get("query_status", "unknown")
        raise DecodeError(f"response has no '{key}' list (query_status={status})")
    if not all(isinstance(item, dict) for item in value):
        raise DecodeError(f"'{key}' must contain objects")
    return value


def defang_http(text: str) -> str:
    return text.replace("http", "hxxp")


# ---------------- models ----------------
@dataclass(frozen=True)
class FilterOptions:
    window: DateRange
    reporter: str = ""
    exclude_online: bool = False
    exclude_offline: bool = False
    exclude_ioc: str = "hash"


@dataclass(frozen=True)
class UrlEntry:
    url_id: str
    url: str
    url_status: str
    dateadded: datetime
    reporter: str
    threat: str
    tags: Tuple[str, ...]
    urlhaus_reference: str

    CSV_HEADER: ClassVar[Tuple[str, ...]] = ("url_id", "url", "url_status", "dateadded", "reporter", "threat", "tags")

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "UrlEntry":
        return cls(
            url_id=_str(raw, "url_id"),
            url=_str(raw, "url"),
            url_status=_str(raw, "url_status"),
            dateadded=_ts(raw, "dateadded"),
            reporter=_str(raw, "reporter"),
            threat=_str(raw, "threat"),
            tags=_tags(raw),
            urlhaus_reference=_str(raw, "urlhaus_reference"),
        )

    def status_ok(self, opts: FilterOptions) -> bool:
        return (self.url_status == "online" and not opts.exclude_online) or (
            self.url_status == "offline" and not opts.exclude_offline
        )

    def matches(self, opts: FilterOptions) -> bool:
        return self.status_ok(opts) and opts.reporter in self.reporter and opts.window.contains(self.dateadded)

    def csv_row(self) -> List[str]:
        return [self.url_id, defang_http(self.url), self.url_status, utc_text(self.dateadded), self.reporter, self.threat, ":".join(self.tags)]


@dataclass(frozen=True)
class IocEntry:
    id: str
    ioc: str
    threat_type: str
    threat_type_desc: str
    ioc_type: str
    ioc_type_desc: str
    malware: str
    malware_printable: str
    malware_alias: str
    malware_malpedia: str
    confidence_level: int
    first_seen: datetime
    reporter: str
    tags: Tuple[str, ...]

    CSV_HEADER: ClassVar[Tuple[str, ...]] = (
        "id",
        "ioc",
        "threat_type",
        "threat_type_desc",
        "ioc_type",
        "ioc_type_desc",
        "malware",
        "malware_printable",
        "malware_alias",
        "malware_malpedia",
        "confidence_level",
        "first_seen",
        "reporter",
        "tags",
    )

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "IocEntry":
        return cls(
            id=_str(raw, "id"),
            ioc=_str(raw, "ioc"),
            threat_type=_str(raw, "threat_type"),
            threat_type_desc=_str(raw, "threat_type_desc"),
            ioc_type=_str(raw, "ioc_type"),
            ioc_type_desc=_str(raw, "ioc_type_desc"),
            malware=_str(raw, "malware"),
            malware_printable=_str(raw, "malware_printable"),
            malware_alias=_str(raw, "malware_alias"),
            malware_malpedia=_str(raw, "malware_malpedia"),
            confidence_level=_int(raw, "confidence_level"),
            first_seen=_ts(raw, "first_seen"),
            reporter=_str(raw, "reporter"),
            tags=_tags(raw),
        )

    def matches(self, opts: FilterOptions) -> bool:
        excluded = opts.exclude_ioc in self.ioc_type
        return opts.reporter in self.reporter and not excluded and opts.window.contains(self.first_seen)

    def csv_row(self) -> List[str]:
        return [
            self.id,
            defang_http(self.ioc),
            self.threat_type,
            self.threat_type_desc,
            self.ioc_type,
            self.ioc_type_desc,
            self.malware,
            self.malware_printable,
            self.malware_alias,
            self.malware_malpedia,
            str(self.confidence_level),
            utc_text(self.first_seen),
            self.reporter,
            ":".join(self.tags),
        ]


Entry = Union[UrlEntry, IocEntry]


@dataclass(frozen=True)
class UrlResponse:
    query_status: str
    firstseen: datetime
    lastseen: datetime
    url_count: str
    urls: List[UrlEntry]

    entry_type: ClassVar[Type[UrlEntry]] = UrlEntry

    @classmethod
    def from_dict(cls, raw: Any) -> "UrlResponse":
        if not isinstance(raw, dict):
            raise DecodeError("URLhaus response is not a JSON object")
        urls = [UrlEntry.from_dict(item) for item in _entry_list(raw, "urls")]
        return cls(
            query_status=_str(raw, "query_status"),
            firstseen=_ts(raw, "firstseen"),
            lastseen=_ts(raw, "lastseen"),
            url_count=_str(raw, "url_count"),
            urls=urls,
        )

    @property
    def entries(self) -> List[UrlEntry]:
        return self.urls


@dataclass(frozen=True)
class IocResponse:
    query_status: str
    data: List[IocEntry]

    entry_type: ClassVar[Type[IocEntry]] = IocEntry

    @classmethod
    def from_dict(cls, raw: Any) -> "IocResponse":
        if not isinstance(raw, dict):
            raise DecodeError("ThreatFox response is not a JSON object")
        data = [IocEntry.from_dict(item) for item in _entry_list(raw, "data")]
        return cls(query_status=_str(raw, "query_status"), data=data)

    @property
    def entries(self) -> List[IocEntry]:
        return self.data


Envelope = Union[UrlResponse, IocResponse]


def entry_to_dict(entry: Entry) -> Dict[str, Any]:
    out = asdict(entry)
    for f in fields(entry):
        value = out[f.name]
        if isinstance(value, datetime):
            out[f.name] = format_ts(value)
        elif isinstance(value, tuple):
            out[f.name] = list(value)
    return out


def select_entries(entries: Iterable[Entry], opts: FilterOptions) -> Iterator[Entry]:
    return (e for e in entries if e.matches(opts))


# ---------------- config ----------------
@dataclass
class Settings:
    urlhaus_url: str = URLHAUS_TAG_URL
    threatfox_url: str = THREATFOX_API_URL
    threatfox_limit: int = 1000
    timeout: Optional[float] = None
    user_agent: str = DEFAULT_UA
    auth_key: str = ""
    out_dir: Path = Path(".")


def load_settings(path: Optional[Path], *, required: bool = False) -> Settings:
    settings = Settings()
    if path is not None and path.exists():
        try:
            with path.open("r", encoding="utf-8") as f:
                cfg = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"cannot read config {path}: {e}") from e
        if not isinstance(cfg, dict):
            raise ConfigError(f"config {path} must be a mapping")
        known = {f.name for f in fields(Settings)}
        for key, value in cfg.items():
            if key not in known:
                logger.warning("Ignoring unknown config key %r in %s", key, path)
                continue
            try:
                if key == "out_dir":
                    value = Path(value)
                elif key == "threatfox_limit":
                    value = int(value)
                elif key == "timeout" and value is not None:
                    value = float(value)
            except (TypeError, ValueError) as e:
                raise ConfigError(f"invalid value for '{key}' in {path}: {value!r}") from e
            setattr(settings, key, value)
        logger.debug("Loaded settings from %s", path)
    elif path is not None and required:
        raise ConfigError(f"config file not found: {path}")
    if not settings.auth_key:
        settings.auth_key = os.environ.get("ABUSECH_AUTH_KEY", "")
    return settings


# ---------------- HTTP layer ----------------
def build_session(settings: Settings) -> requests.Session:
    # no retry adapter: one attempt per run
    s = requests.Session()
    s.headers["User-Agent"] = settings.user_agent
    if settings.auth_key:
        s.headers["Auth-Key"] = settings.auth_key
    return s


def save_raw(name: str, content: str) -> None:
    if not _SAVE_RAW_DIR:
        return
    try:
        _SAVE_RAW_DIR.mkdir(parents=True, exist_ok=True)
        p = _SAVE_RAW_DIR / f"{name}.txt"
        with p.open("w", encoding="utf-8") as f_text:
            f_text.write(content)
    except OSError as e:
        logger.debug("raw-save-failed %s: %s", name, e)


def http_post(session: requests.Session, url: str, *, name: str, timeout: Optional[float] = None, **kwargs: Any) -> Any:
    """POST once and return the decoded JSON body."""
    t0 = time.perf_counter()
    try:
        r = session.post(url, timeout=timeout, **kwargs)
        r.raise_for_status()
    except requests.RequestException as e:
        raise TransportError(f"failed to get abuse.ch api response. [{e!r}]") from e
    dt = time.perf_counter() - t0
    if HTTP_DEBUG:
        logger.debug("HTTP %s %.2fs %s [%s]", r.status_code, dt, url, name)
    save_raw(name, r.text)
    try:
        return r.json()
    except ValueError as e:
        raise DecodeError(f"{name} response is not valid JSON: {e}") from e


# ---------------- feed registry ----------------
FeedFunc = Callable[[requests.Session, str, Settings], Envelope]


class FeedRegistry(dict):
    def register(self, names: Iterable[str]) -> Callable[[FeedFunc], FeedFunc]:
        def decorator(func: FeedFunc) -> FeedFunc:
            for name in names:
                if name in self:
                    raise ValueError(f"Feed already registered for '{name}'")
                self[name] = func
            return func

        return decorator


FEEDS: FeedRegistry = FeedRegistry()


def register_feed(*names: str) -> Callable[[FeedFunc], FeedFunc]:
    if not names:
        raise ValueError("At least one feed name is required")
    return FEEDS.register(names)


def resolve_feed(api: str) -> Tuple[str, FeedFunc]:
    """Pick the feed whose name occurs in ``api``; URLhaus otherwise."""
    for name, func in FEEDS.items():
        if name != DEFAULT_FEED and name in api:
            return name, func
    return DEFAULT_FEED, FEEDS[DEFAULT_FEED]


@register_feed("threatfox")
def fetch_threatfox(session: requests.Session, tag: str, settings: Settings) -> IocResponse:
    payload = {"query": "taginfo", "tag": tag, "limit": str(settings.threatfox_limit)}
    body = http_post(session, settings.threatfox_url, name="threatfox", timeout=settings.timeout, json=payload)
    return IocResponse.from_dict(body)


@register_feed("urlhaus")
def fetch_urlhaus(session: requests.Session, tag: str, settings: Settings) -> UrlResponse:
    body = http_post(session, settings.urlhaus_url, name="urlhaus", timeout=settings.timeout, data={"tag": tag})
    return UrlResponse.from_dict(body)


# ---------------- writers ----------------
def write_json(path: Path, rows: List[Entry]) -> str:
    """Write ``rows`` as indented JSON; returns the file object's repr."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            json.dump([entry_to_dict(r) for r in rows], f, ensure_ascii=False, indent=2)
            return repr(f)
    except OSError as e:
        raise OutputError(f"Unable to write file {path}. [{e}]") from e


def write_csv(path: Path, header: Iterable[str], rows: Iterable[Entry]) -> int:
    n = 0
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", newline="", encoding="utf-8") as f:
            w = csv.writer(f, quoting=csv.QUOTE_ALL)
            w.writerow(list(header))
            for r in rows:
                w.writerow(r.csv_row())
                n += 1
    except OSError as e:
        raise OutputError(f"Unable to write file {path}. [{e}]") from e
    return n


def print_entries(rows: Iterable[Entry]) -> int:
    n = 0
    for r in rows:
        print(repr(r))
        n += 1
    return n


def emit(fmt: Optional[str], envelope: Envelope, opts: FilterOptions, out_dir: Path) -> int:
    """Render one envelope; returns the number of entries written."""
    mode = (fmt or "").lower()
    if mode == "json":
        # unfiltered on purpose: json mode has always dumped the full response list
        desc = write_json(out_dir / JSON_FILE, envelope.entries)
        print(f"outputted. [{desc}].")
        return len(envelope.entries)
    selected = select_entries(envelope.entries, opts)
    if mode == "csv":
        path = out_dir / CSV_FILE
        n = write_csv(path, envelope.entry_type.CSV_HEADER, selected)
        print(f"outputted. [{path}].")
        return n
    return print_entries(selected)


# ---------------- logging ----------------
class JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {"ts": iso(now_utc()), "level": record.levelname, "name": record.name, "msg": record.getMessage()}
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(console_level: int, *, log_file: Optional[Path], file_level: int, fmt: str) -> None:
    logger.setLevel(min(console_level, file_level))
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    ch = logging.StreamHandler()
    ch.setLevel(console_level)
    ch.setFormatter(logging.Formatter("%(levelname)s | %(message)s"))
    logger.addHandler(ch)
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(file_level)
        fh.setFormatter(JsonLineFormatter() if fmt == "json" else logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
        logger.addHandler(fh)


# ---------------- small helpers ----------------
def gh_summary_path() -> Optional[Path]:
    p = os.environ.get("GITHUB_STEP_SUMMARY")
    return Path(p) if p else None


def append_gh_summary(lines: List[str]) -> None:
    p = gh_summary_path()
    if not p:
        return
    try:
        p.parent.mkdir(parents=True, exist_ok=True)
        with p.open("a", encoding="utf-8") as f:
            f.write("\n".join(lines) + "\n")
    except OSError as e:
        logger.debug("step-summary-failed %s: %s", p, e)


# ---------------- CLI ----------------
def build_arg_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="abusefeed", description="Query abuse.ch URLhaus/ThreatFox by tag and filter the results")
    ap.add_argument("-a", "--api", default=DEFAULT_FEED, help="API endpoint (urlhaus or threatfox)")
    ap.add_argument("--exclude-online", action="store_true", help="Exclude url_status online (urlhaus)")
    ap.add_argument("--exclude-offline", action="store_true", help="Exclude url_status offline (urlhaus)")
    ap.add_argument("--exclude-ioc", default="hash", help="Exclude ioc types containing this (threatfox)")
    ap.add_argument("-r", "--reporter", default="", help="Filter by reporter (partial match)")
    ap.add_argument("-t", "--tag", default="emotet", help="Tag to query")
    ap.add_argument("--date-from", default=None, help="Filter by date from (YYYYMMDD, default today UTC)")
    ap.add_argument("--date-to", default=None, help="Filter by date to (YYYYMMDD, default today UTC)")
    ap.add_argument("-f", "--format", default=None, help="Output format (json or csv); console otherwise")
    ap.add_argument("--out-dir", type=Path, default=None, help="Directory for result.json / result.csv")

    # config / transport
    ap.add_argument("--config", type=Path, default=None, help="YAML settings file (default: abusefeed.yml if present)")
    ap.add_argument("--auth-key", default=None, help="abuse.ch Auth-Key (or ABUSECH_AUTH_KEY)")
    ap.add_argument("--timeout", type=float, default=None, help="Request timeout in seconds")

    # logging / diag
    ap.add_argument("-v", "--verbose", action="count", default=0)
    ap.add_argument("--log-file", type=Path, default=None)
    ap.add_argument("--log-format", choices=["text", "json"], default="text")
    ap.add_argument("--log-file-level", choices=["ERROR", "WARNING", "INFO", "DEBUG"], default="DEBUG")
    ap.add_argument("--save-raw-dir", type=Path, default=None)
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)

    # logging
    console_level = logging.WARNING
    if args.verbose == 1:
        console_level = logging.INFO
    elif args.verbose >= 2:
        console_level = logging.DEBUG
    file_level = getattr(logging, args.log_file_level, logging.DEBUG)
    configure_logging(console_level, log_file=args.log_file, file_level=file_level, fmt=args.log_format)

    global _SAVE_RAW_DIR, HTTP_DEBUG
    _SAVE_RAW_DIR = args.save_raw_dir
    HTTP_DEBUG = (console_level == logging.DEBUG or (args.log_file is not None and file_level == logging.DEBUG))

    try:
        if args.config is not None:
            settings = load_settings(args.config, required=True)
        else:
            settings = load_settings(Path("abusefeed.yml"))
        if args.out_dir is not None:
            settings.out_dir = args.out_dir
        if args.timeout is not None:
            settings.timeout = args.timeout
        if args.auth_key is not None:
            settings.auth_key = args.auth_key

        feed_name, fetch = resolve_feed(args.api)
        opts = FilterOptions(
            window=DateRange.from_days(args.date_from, args.date_to),
            reporter=args.reporter,
            exclude_online=args.exclude_online,
            exclude_offline=args.exclude_offline,
            exclude_ioc=args.exclude_ioc,
        )
        logger.info("Querying %s for tag %r", feed_name, args.tag)
        envelope = fetch(build_session(settings), args.tag, settings)
        logger.info("%s returned %d entries (query_status=%s)", feed_name, len(envelope.entries), envelope.query_status)
        written = emit(args.format, envelope, opts, settings.out_dir)
    except AbuseFeedError as e:
        logger.error("%s", e)
        return 1

    logger.info("Wrote %d of %d %s entries", written, len(envelope.entries), feed_name)
    append_gh_summary([
        "### abusefeed",
        "",
        "| Metric | Value |",
        "| --- | ---: |",
        f"| Feed | {feed_name} |",
        f"| Tag | {args.tag} |",
        f"| Entries returned | {len(envelope.entries)} |",
        f"| Entries written | {written} |",
        f"| Format | {(args.format or 'console').lower()} |",
        "",
    ])
    return 0


if __name__ == "__main__":
    import sys
    rc = main()
    if rc:
        sys.exit(rc)
