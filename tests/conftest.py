from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

import requests


class FakeResponse:
    def __init__(self, payload: Any, status_code: int = 200) -> None:
        self.status_code = status_code
        self.text = payload if isinstance(payload, str) else json.dumps(payload)

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Client Error", response=self)  # type: ignore[arg-type]

    def json(self) -> Any:
        return json.loads(self.text)


class FakeSession:
    """Stands in for ``requests.Session``; records every POST."""

    def __init__(self, response: Optional[FakeResponse] = None, error: Optional[Exception] = None) -> None:
        self.response = response
        self.error = error
        self.calls: List[Dict[str, Any]] = []
        self.headers: Dict[str, str] = {}

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append({"url": url, **kwargs})
        if self.error is not None:
            raise self.error
        assert self.response is not None
        return self.response


def url_entry(url_id: str, *, url: str = "http://evil.example/a.exe", status: str = "online",
              dateadded: str = "2024-03-01 00:00:00 UTC", reporter: str = "abuse_ch",
              tags: Optional[List[str]] = None) -> Dict[str, Any]:
    return {
        "url_id": url_id,
        "url": url,
        "url_status": status,
        "dateadded": dateadded,
        "reporter": reporter,
        "threat": "malware_download",
        "tags": ["emotet", "epoch4"] if tags is None else tags,
        "urlhaus_reference": f"https://urlhaus.abuse.ch/url/{url_id}/",
    }


def ioc_entry(ioc_id: str, *, ioc: str = "http://c2.example/gate.php", ioc_type: str = "url",
              first_seen: str = "2024-03-01 00:00:00 UTC", reporter: str = "abuse_ch") -> Dict[str, Any]:
    return {
        "id": ioc_id,
        "ioc": ioc,
        "threat_type": "botnet_cc",
        "threat_type_desc": "Indicator that identifies a botnet command&control server (C&C)",
        "ioc_type": ioc_type,
        "ioc_type_desc": "URL that is used for botnet Command&control (C&C)",
        "malware": "win.emotet",
        "malware_printable": "Emotet",
        "malware_alias": None,
        "malware_malpedia": "https://malpedia.caad.fkie.fraunhofer.de/details/win.emotet",
        "confidence_level": 75,
        "first_seen": first_seen,
        "reporter": reporter,
        "tags": ["emotet"],
    }


def url_payload(entries: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "query_status": "ok",
        "firstseen": "2019-01-18 07:31:06 UTC",
        "lastseen": "2024-03-01 12:00:00 UTC",
        "url_count": str(len(entries)),
        "urls": entries,
    }


def ioc_payload(entries: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {"query_status": "ok", "data": entries}
