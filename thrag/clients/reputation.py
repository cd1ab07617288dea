"""IP reputation and user profile lookups."""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Literal, Mapping, Optional, Protocol, Tuple

import requests

from thrag.errors import ReputationLookupError
from thrag.scoring.behavior import BehaviorProfile

logger = logging.getLogger(__name__)

ReputationCategory = Literal["malicious", "suspicious", "clean", "unknown"]


@dataclass(frozen=True)
class IpReputation:
    ip: str
    category: ReputationCategory = "unknown"
    country: Optional[str] = None
    asn: Optional[str] = None
    threat_types: Tuple[str, ...] = ()

    @property
    def is_malicious(self) -> bool:
        return self.category == "malicious"

    @property
    def is_suspicious(self) -> bool:
        return self.category == "suspicious"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "ip": self.ip,
            "reputation": self.category,
            "country": self.country,
            "asn": self.asn,
            "threat_types": list(self.threat_types),
        }

    @classmethod
    def from_dict(cls, ip: str, d: Mapping[str, Any]) -> "IpReputation":
        category = str(d.get("reputation", d.get("category", "unknown"))).lower()
        if category not in ("malicious", "suspicious", "clean"):
            category = "unknown"
        return cls(
            ip=ip,
            category=category,  # type: ignore[arg-type]
            country=d.get("country"),
            asn=d.get("asn"),
            threat_types=tuple(d.get("threat_types", d.get("threatTypes", [])) or []),
        )


@dataclass(frozen=True)
class UserProfile:
    user_id: str
    risk_score: float = 0.0
    normal: BehaviorProfile = field(default_factory=BehaviorProfile)

    def as_dict(self) -> Dict[str, Any]:
        return {"user_id": self.user_id, "risk_score": self.risk_score, "normal": self.normal.as_dict()}


class ReputationService(Protocol):
    def lookup_ip_reputation(self, ip: str) -> IpReputation:
        ...


class UserDirectory(Protocol):
    def lookup_user_profile(self, user_id: str) -> UserProfile:
        ...


class StaticReputationService:
    """Reputation from fixed tables of addresses and CIDR networks.

    ``entries`` maps an address or network (``"203.0.113.0/24"``) to either a
    category string or a dict accepted by :meth:`IpReputation.from_dict`.
    Anything unlisted is ``clean``.
    """

    def __init__(self, entries: Optional[Mapping[str, Any]] = None) -> None:
        self._exact: Dict[str, Mapping[str, Any]] = {}
        self._networks: List[Tuple[ipaddress._BaseNetwork, Mapping[str, Any]]] = []
        for key, value in (entries or {}).items():
            info = {"reputation": value} if isinstance(value, str) else dict(value)
            if "/" in key:
                self._networks.append((ipaddress.ip_network(key, strict=False), info))
            else:
                self._exact[key] = info
        # Most specific network wins.
        self._networks.sort(key=lambda item: -item[0].prefixlen)

    def lookup_ip_reputation(self, ip: str) -> IpReputation:
        try:
            addr = ipaddress.ip_address(ip)
        except ValueError as e:
            raise ReputationLookupError(f"not an IP address: {ip!r}") from e
        if ip in self._exact:
            return IpReputation.from_dict(ip, self._exact[ip])
        for net, info in self._networks:
            if addr.version == net.version and addr in net:
                return IpReputation.from_dict(ip, info)
        return IpReputation(ip=ip, category="clean")


class HttpReputationService:
    """``GET {base_url}/ip/{ip}`` and ``GET {base_url}/users/{user_id}``."""

    def __init__(self, base_url: str, timeout: float = 5.0, session: requests.Session | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http = session or requests.Session()

    def _get(self, path: str) -> Dict[str, Any]:
        try:
            r = self._http.get(f"{self.base_url}{path}", timeout=self.timeout)
            r.raise_for_status()
            body = r.json()
        except (requests.RequestException, ValueError) as e:
            raise ReputationLookupError(f"lookup {path} failed: {e}") from e
        if not isinstance(body, dict):
            raise ReputationLookupError(f"lookup {path} returned {type(body).__name__}")
        return body

    def lookup_ip_reputation(self, ip: str) -> IpReputation:
        body = self._get(f"/ip/{ip}")
        try:
            return IpReputation.from_dict(ip, body)
        except (TypeError, ValueError) as e:
            raise ReputationLookupError(f"malformed reputation for {ip}: {e}") from e

    def lookup_user_profile(self, user_id: str) -> UserProfile:
        body = self._get(f"/users/{user_id}")
        try:
            return UserProfile(
                user_id=user_id,
                risk_score=float(body.get("risk_score", body.get("riskScore", 0.0)) or 0.0),
                normal=BehaviorProfile.from_dict(body.get("normal") or body.get("normal_patterns") or {}),
            )
        except (TypeError, ValueError, AttributeError) as e:
            raise ReputationLookupError(f"malformed profile for {user_id}: {e}") from e


class StaticUserDirectory:
    """User profiles from a mapping; unknown users raise."""

    def __init__(self, profiles: Iterable[UserProfile] = ()) -> None:
        self._profiles = {p.user_id: p for p in profiles}

    def lookup_user_profile(self, user_id: str) -> UserProfile:
        try:
            return self._profiles[user_id]
        except KeyError as e:
            raise ReputationLookupError(f"no profile for user {user_id!r}") from e
