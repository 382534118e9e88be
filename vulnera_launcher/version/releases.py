import json
import time
import logging
import requests
from pathlib import Path
from typing import Any, List, Optional, Tuple
from vulnera_launcher import settings
from vulnera_launcher.version.resolver import normalize_version

log = logging.getLogger(__name__)


def parse_latest_stable_version(releases: Any, tag_prefix: str = settings.RELEASE_TAG_PREFIX) -> Optional[str]:
    """
    Picks the newest stable adapter release from a GitHub ``/releases`` listing.

    The listing is ordered newest-first. Drafts, prereleases and tags that do
    not carry the adapter prefix are skipped.

    :param releases: The decoded JSON array.
    :param tag_prefix: Tag prefix identifying adapter releases.
    :return: The version without the prefix, or None if no release matches.
    """
    if not isinstance(releases, list):
        return None
    for release in releases:
        if not isinstance(release, dict):
            continue
        tag = release.get("tag_name") or ""
        if not tag.startswith(tag_prefix):
            continue
        if release.get("draft") or release.get("prerelease"):
            continue
        version = normalize_version(tag[len(tag_prefix):])
        if version:
            return version
    return None


class ReleaseIndex:
    """
    Answers "what is the latest adapter release" with a TTL cache on disk.

    Lookup order: fresh cache, live GitHub query, stale cache, minimum floor.
    """

    def __init__(
        self,
        cache_path: Path = settings.VERSION_CACHE_PATH,
        api_url: str = settings.RELEASES_API_URL,
        ttl_seconds: int = settings.VERSION_CACHE_TTL_SECONDS,
        floor_version: str = settings.MINIMUM_ADAPTER_VERSION,
        offline: bool = settings.OFFLINE,
        proxy: str = settings.INSTALL_PROXY,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.cache_path = Path(cache_path)
        self.api_url = api_url
        self.ttl_seconds = ttl_seconds
        self.floor_version = floor_version
        self.offline = offline
        self.proxies = {"http": proxy, "https": proxy} if proxy else None
        self.session = session or requests.Session()

    def read_cache(self) -> Optional[Tuple[str, float]]:
        if not self.cache_path.exists():
            return None
        try:
            data = json.loads(self.cache_path.read_text())
            version = normalize_version(data.get("version"))
            if not version:
                return None
            return version, float(data.get("fetched_at", 0))
        except (json.JSONDecodeError, IOError, AttributeError, TypeError, ValueError) as e:
            log.debug(f"Ignoring unreadable version cache '{self.cache_path}': {e}")
            return None

    def write_cache(self, version: str) -> None:
        """Atomically records the latest known version and when it was fetched."""
        temp_path = self.cache_path.with_suffix(".tmp")
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(json.dumps({"version": version, "fetched_at": time.time()}, indent=4))
            temp_path.replace(self.cache_path)
        except (IOError, OSError) as e:
            log.error(f"Failed to write version cache '{self.cache_path}': {e}")
        finally:
            temp_path.unlink(missing_ok=True)

    def fetch_latest(self) -> Optional[str]:
        """Queries the GitHub releases API. Returns None on any failure."""
        if self.offline:
            return None
        try:
            headers = {"User-Agent": settings.USER_AGENT, "Accept": "application/vnd.github+json"}
            res = self.session.get(self.api_url, timeout=settings.HTTP_TIMEOUT, headers=headers, proxies=self.proxies)
            res.raise_for_status()
            releases: List[Any] = res.json()
        except (requests.RequestException, ValueError) as e:
            log.error(f"Failed to fetch adapter releases from {self.api_url}: {e}")
            return None

        version = parse_latest_stable_version(releases)
        if version is None:
            log.warning(f"No stable '{settings.RELEASE_TAG_PREFIX}*' release found at {self.api_url}")
        return version

    def latest_version(self, force_refresh: bool = False) -> str:
        cached = self.read_cache()
        now = time.time()

        if cached and not force_refresh and now - cached[1] < self.ttl_seconds:
            log.debug(f"Latest adapter version from cache (age {int(now - cached[1])}s): {cached[0]}")
            return cached[0]

        log.info("Fetching latest adapter version from GitHub...")
        fetched = self.fetch_latest()
        if fetched:
            log.info(f"Latest adapter version from GitHub: {fetched}")
            self.write_cache(fetched)
            return fetched

        if cached:
            log.warning(f"Release lookup failed; using stale cached version: {cached[0]}")
            return cached[0]

        log.warning(f"Release lookup failed and no cache; falling back to minimum: {self.floor_version}")
        return self.floor_version
