import os
import stat
import logging
import threading
import requests
from pathlib import Path
from typing import Optional
from vulnera_launcher import settings
from vulnera_launcher.exceptions import InstallCancelled, InstallFailure
from vulnera_launcher.external.platform import PlatformInfo

log = logging.getLogger(__name__)


class ReleaseDownloader:
    """
    Downloads adapter release assets.

    Proxies come from the explicit ``proxy`` argument or, through requests'
    environment handling, from HTTPS_PROXY / NO_PROXY. Progress is written to
    the logger only; standard output is reserved for the protocol.
    """

    def __init__(
        self,
        url_template: str = settings.DOWNLOAD_URL_TEMPLATE,
        proxy: str = settings.INSTALL_PROXY,
        timeout: float = settings.HTTP_TIMEOUT,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.url_template = url_template
        self.proxies = {"http": proxy, "https": proxy} if proxy else None
        self.timeout = timeout
        self.session = session or requests.Session()

    def asset_url(self, version: str, platform_info: PlatformInfo) -> str:
        return self.url_template.format(version=version, asset=platform_info.asset_name)

    def download(
        self,
        version: str,
        platform_info: PlatformInfo,
        dest_path: Path,
        cancel_event: Optional[threading.Event] = None,
    ) -> Path:
        """
        Streams the release asset for ``version`` to ``dest_path``.

        :raises InstallCancelled: If cancel_event is set mid-download.
        :raises InstallFailure: On network, proxy, registry or disk errors.
        :return: The path of the downloaded executable.
        """
        url = self.asset_url(version, platform_info)
        log.info(f"Downloading {settings.ADAPTER_NAME} {version} ({platform_info.target_triple}) from {url}")
        headers = {"User-Agent": settings.USER_AGENT}
        try:
            with self.session.get(url, stream=True, timeout=self.timeout, headers=headers, proxies=self.proxies) as r:
                r.raise_for_status()
                total_size = int(r.headers.get("content-length", 0) or 0)
                downloaded = 0
                last_reported = -1
                with open(dest_path, "wb") as f:
                    for chunk in r.iter_content(chunk_size=settings.DOWNLOAD_CHUNK_SIZE):
                        if cancel_event is not None and cancel_event.is_set():
                            raise InstallCancelled(f"Download of {url} cancelled.")
                        if not chunk:
                            continue
                        f.write(chunk)
                        downloaded += len(chunk)
                        if total_size:
                            percent = int(100 * downloaded / total_size) // 25 * 25
                            if percent != last_reported:
                                log.debug(f"Downloaded {downloaded / 1024 / 1024:.2f} MB ({percent}%)")
                                last_reported = percent
        except requests.exceptions.ProxyError as e:
            raise InstallFailure(f"Proxy rejected download of {url}", cause=e) from e
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            transient = status is None or status >= 500 or status == 429
            raise InstallFailure(f"Release server returned HTTP {status} for {url}", cause=e, transient=transient) from e
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise InstallFailure(f"Network unreachable while downloading {url}", cause=e, transient=True) from e
        except requests.RequestException as e:
            raise InstallFailure(f"Download failed for {url}", cause=e) from e
        except OSError as e:
            raise InstallFailure(f"Failed to write '{dest_path}'", cause=e) from e

        if downloaded == 0:
            raise InstallFailure(f"Release asset at {url} was empty.")

        if not platform_info.is_windows:
            try:
                mode = os.stat(dest_path).st_mode
                os.chmod(dest_path, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
            except OSError as e:
                raise InstallFailure(f"chmod +x failed for '{dest_path}'", cause=e) from e

        log.info(f"Downloaded {downloaded / 1024 / 1024:.2f} MB to '{dest_path}'.")
        return Path(dest_path)
