#!/usr/bin/env python3
import argparse
import enum
import itertools
import logging
import posixpath
import re
import shutil
import signal
import sys
import threading
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Callable, Dict, List, Optional, Union
from urllib.parse import unquote, urldefrag, urljoin, urlparse

import requests
from bs4 import BeautifulSoup
from bs4.element import Tag
from requests.adapters import HTTPAdapter

# -------------------- Config --------------------

DEFAULT_ROOT_URL = "http://books.toscrape.com/"
DEFAULT_OUTPUT_FOLDER = "Page"
INDEX_FILE = "index.html"

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.7",
}

HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")
INVALID_FILENAME_CHARS_RE = re.compile(r'[<>:"/\\|?*]')


@dataclass
class Settings:
    timeout: float = 15.0
    workers: int = 0  # 0 = one thread per task
    deadline: float = 1800.0
    chunk_size: int = 64 * 1024
    clean: bool = False
    extra_headers: List[str] = field(default_factory=list)  # "Name: value"


# -------------------- Errors --------------------


class MirrorError(Exception):
    pass


class FetchErrorKind(enum.Enum):
    NOT_FOUND = "not-found"
    NETWORK = "network"
    PARSE = "parse"


class FetchError(MirrorError):
    def __init__(
        self,
        url: str,
        kind: FetchErrorKind,
        detail: str = "",
        status: Optional[int] = None,
    ):
        self.url = url
        self.kind = kind
        self.detail = detail
        self.status = status
        super().__init__(f"{kind.value} error for {url}: {detail}")


class FetchCancelled(MirrorError):
    def __init__(self, url: str):
        self.url = url
        super().__init__(f"fetch of {url} cancelled")


# -------------------- Cancellation --------------------


class CancellationToken:
    """Cooperative stop signal shared by every branch of a crawl.

    Nothing is interrupted by it: fetchers and the extraction loop poll
    ``cancelled`` and stop issuing new work once it turns true.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._event = threading.Event()
        self._deadline = None if timeout is None else time.monotonic() + timeout

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self._event.set()
            return True
        return False


# -------------------- Utils --------------------


def sanitize_filename(name: str) -> str:
    name = INVALID_FILENAME_CHARS_RE.sub("_", name)
    name = name or "file"
    if name.startswith("."):
        name = "_" + name[1:]
    return name[:200]


def is_relative_reference(value: str) -> bool:
    try:
        p = urlparse(value.strip())
    except ValueError:
        # e.g. "//[host" is rejected by urllib as an invalid IPv6 netloc
        return False
    return not p.scheme and not p.netloc


def local_path(root: Path, base_dir: Path, reference_path: str) -> Path:
    """Map the path of a relative reference onto the output tree.

    ``..`` never climbs above ``root`` and a leading ``/`` starts from
    ``root`` instead of ``base_dir``.
    """
    path = urlparse(reference_path).path
    if path.startswith("/"):
        parts: List[str] = []
    else:
        parts = list(base_dir.relative_to(root).parts)
    for seg in path.split("/"):
        if seg in ("", "."):
            continue
        if seg == "..":
            if parts:
                parts.pop()
            continue
        parts.append(sanitize_filename(unquote(seg)))
    return root.joinpath(*parts)


def page_file_name(url_path: str) -> str:
    last = posixpath.basename(url_path.strip())
    if not last:
        return INDEX_FILE
    return sanitize_filename(unquote(last))


def build_session(headers: Optional[Dict[str, str]] = None) -> requests.Session:
    s = requests.Session()
    adapter = HTTPAdapter(max_retries=0, pool_connections=128, pool_maxsize=128)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(DEFAULT_HEADERS if headers is None else headers)
    return s


def apply_headers_to_session(session: requests.Session, settings: Settings) -> None:
    for h in settings.extra_headers:
        if ":" not in h:
            logging.warning("invalid header (no colon): %s", h)
            continue
        k, v = h.split(":", 1)
        session.headers[k.strip()] = v.strip()


# -------------------- HTML utils --------------------


def bs4_parse(html: Union[str, bytes]) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except Exception:
        return BeautifulSoup(html, "html.parser")


def serialize_html(soup: BeautifulSoup) -> str:
    try:
        return soup.decode(formatter="html")
    except Exception:
        return str(soup)


# -------------------- Fetcher --------------------


class Fetcher:
    def __init__(
        self,
        session: requests.Session,
        token: CancellationToken,
        *,
        timeout: float = 15.0,
        chunk_size: int = 64 * 1024,
    ):
        self.session = session
        self.token = token
        self.timeout = timeout
        self.chunk_size = chunk_size

    def _get(self, url: str) -> requests.Response:
        if self.token.cancelled:
            raise FetchCancelled(url)
        try:
            r = self.session.get(url, timeout=self.timeout, stream=True)
        except requests.RequestException as e:
            raise FetchError(url, FetchErrorKind.NETWORK, str(e)) from e
        if not 200 <= r.status_code < 300:
            r.close()
            raise FetchError(
                url,
                FetchErrorKind.NOT_FOUND,
                f"HTTP {r.status_code}",
                status=r.status_code,
            )
        return r

    def _read_body(self, url: str, r: requests.Response) -> bytes:
        chunks: List[bytes] = []
        with r:
            try:
                for chunk in r.iter_content(chunk_size=self.chunk_size):
                    if self.token.cancelled:
                        raise FetchCancelled(url)
                    if chunk:
                        chunks.append(chunk)
            except requests.RequestException as e:
                raise FetchError(url, FetchErrorKind.NETWORK, str(e)) from e
        return b"".join(chunks)

    def open_page(self, url: str) -> BeautifulSoup:
        r = self._get(url)
        ct = (r.headers.get("Content-Type") or "").lower()
        if ct and not any(t in ct for t in HTML_CONTENT_TYPES):
            r.close()
            raise FetchError(
                url, FetchErrorKind.PARSE, f"not an HTML document ({ct})"
            )
        body = self._read_body(url, r)
        try:
            return bs4_parse(body)
        except Exception as e:
            raise FetchError(url, FetchErrorKind.PARSE, str(e)) from e

    def download_bytes(self, url: str) -> bytes:
        r = self._get(url)
        return self._read_body(url, r)


# -------------------- Extraction --------------------


@dataclass(frozen=True)
class ResourceRule:
    tag: str
    attribute: str


RESOURCE_RULES = (
    ResourceRule("a", "href"),
    ResourceRule("link", "href"),
    ResourceRule("script", "src"),
    ResourceRule("img", "src"),
)


@dataclass(frozen=True)
class ResourceReference:
    tag: str
    attribute: str
    raw_value: str
    is_page: bool


def _attr_text(element: Tag, name: str) -> Optional[str]:
    value = element.get(name)
    if isinstance(value, list):
        value = " ".join(value)
    return value


def extract_reference(element: Tag, rule: ResourceRule) -> Optional[ResourceReference]:
    tag = (element.name or "").lower()
    if tag != rule.tag:
        return None
    if tag == "link":
        rel = _attr_text(element, "rel") or ""
        if rel.lower() != "stylesheet":
            return None
    value = _attr_text(element, rule.attribute)
    if not value or not value.strip():
        return None
    if not is_relative_reference(value):
        return None
    return ResourceReference(tag, rule.attribute, value, is_page=tag == "a")


def extract(element: Tag) -> Optional[ResourceReference]:
    for rule in RESOURCE_RULES:
        ref = extract_reference(element, rule)
        if ref is not None:
            return ref
    return None


# -------------------- Persistence --------------------


class Persister:
    def __init__(self):
        self._saved_pages = set()
        self.lock = Lock()

    def _claim(self, path: Path) -> bool:
        key = path.absolute()
        with self.lock:
            if key in self._saved_pages or path.exists():
                return False
            self._saved_pages.add(key)
            return True

    def page_path(self, directory: Path, url_path: str) -> Path:
        return directory / page_file_name(url_path)

    def save_page(self, directory: Path, url_path: str, content: str) -> bool:
        path = self.page_path(directory, url_path)
        if not self._claim(path):
            return False
        try:
            directory.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError:
            with self.lock:
                self._saved_pages.discard(path.absolute())
            raise
        return True

    def save_resource(self, path: Path, content: bytes) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return path


# -------------------- Executors --------------------


class ThreadPerTaskExecutor(Executor):
    """Executor that starts a fresh thread for every submitted call."""

    def __init__(self, thread_name_prefix: str = "mirror"):
        self._prefix = thread_name_prefix
        self._ids = itertools.count(1)
        self._threads = set()
        self._shutdown = False
        self.lock = Lock()

    def submit(self, fn, *args, **kwargs) -> Future:
        future: Future = Future()
        with self.lock:
            if self._shutdown:
                raise RuntimeError("cannot schedule new futures after shutdown")
            t = threading.Thread(
                target=self._run,
                args=(future, fn, args, kwargs),
                name=f"{self._prefix}-{next(self._ids)}",
                daemon=True,
            )
            self._threads.add(t)
        t.start()
        return future

    def _run(self, future: Future, fn, args, kwargs) -> None:
        try:
            if not future.set_running_or_notify_cancel():
                return
            try:
                result = fn(*args, **kwargs)
            except BaseException as e:
                future.set_exception(e)
            else:
                future.set_result(result)
        finally:
            with self.lock:
                self._threads.discard(threading.current_thread())

    def shutdown(self, wait: bool = True, *, cancel_futures: bool = False) -> None:
        with self.lock:
            self._shutdown = True
            threads = list(self._threads)
        if wait:
            for t in threads:
                t.join()


def make_executor(workers: int) -> Executor:
    if workers > 0:
        return ThreadPoolExecutor(max_workers=workers, thread_name_prefix="mirror")
    return ThreadPerTaskExecutor()


def settle_when_all(children: List[Future], done: Future) -> None:
    # done resolves once every child has settled, whatever its outcome
    if not children:
        done.set_result(None)
        return
    remaining = [len(children)]
    lock = Lock()

    def child_done(_: Future) -> None:
        with lock:
            remaining[0] -= 1
            last = remaining[0] == 0
        if last:
            done.set_result(None)

    for c in children:
        c.add_done_callback(child_done)


# -------------------- Crawl --------------------


@dataclass(frozen=True)
class PageVisit:
    url: str
    target_dir: Path


@dataclass(frozen=True)
class DownloadTask:
    absolute_url: str
    destination: Path


@dataclass
class MirrorStats:
    pages: int = 0
    resources: int = 0
    failures: int = 0
    lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def add(self, *, pages: int = 0, resources: int = 0, failures: int = 0) -> None:
        with self.lock:
            self.pages += pages
            self.resources += resources
            self.failures += failures

    @property
    def files(self) -> int:
        return self.pages + self.resources


ProgressCallback = Callable[[Path], None]


class SiteMirror:
    def __init__(
        self,
        fetcher: Fetcher,
        persister: Persister,
        token: CancellationToken,
        progress: Optional[ProgressCallback] = None,
        *,
        workers: int = 0,
        poll_interval: float = 0.5,
    ):
        self.fetcher = fetcher
        self.persister = persister
        self.token = token
        self.progress = progress
        self.workers = workers
        self.poll_interval = poll_interval
        self.stats = MirrorStats()
        self._root: Optional[Path] = None
        self._executor: Optional[Executor] = None

    def mirror(self, root_url: str, output_dir: Union[str, Path]) -> MirrorStats:
        """Mirror ``root_url`` into ``output_dir`` and wait for the whole tree.

        Only a failure to fetch the root page is raised; every other branch
        failure is logged and counted in the returned stats.
        """
        self._root = Path(output_dir)
        self.stats = MirrorStats()
        logging.info("GET %s", root_url)
        document = self.fetcher.open_page(root_url)
        self._executor = make_executor(self.workers)
        done: Future = Future()
        try:
            children = self._process_page(PageVisit(root_url, self._root), document)
            settle_when_all(children, done)
            while True:
                finished, _ = wait_futures([done], timeout=self.poll_interval)
                if finished:
                    break
        finally:
            self._executor.shutdown(wait=True)
            self._executor = None
        return self.stats

    def _report(self, path: Path) -> None:
        if self.progress is None:
            return
        try:
            self.progress(path)
        except Exception:
            logging.exception("progress callback failed for %s", path)

    def _visit(self, visit: PageVisit) -> List[Future]:
        try:
            document = self.fetcher.open_page(visit.url)
        except FetchCancelled:
            logging.debug("cancelled page: %s", visit.url)
            return []
        except FetchError as e:
            logging.warning("failed page %s: %s", visit.url, e)
            self.stats.add(failures=1)
            return []
        return self._process_page(visit, document)

    def _process_page(self, visit: PageVisit, document: BeautifulSoup) -> List[Future]:
        url_path = urlparse(visit.url).path
        try:
            saved = self.persister.save_page(
                visit.target_dir, url_path, serialize_html(document)
            )
        except OSError as e:
            logging.error("cannot save page %s in %s: %s", visit.url, visit.target_dir, e)
            self.stats.add(failures=1)
            return []
        if not saved:
            logging.debug("already visited: %s", visit.url)
            return []
        self.stats.add(pages=1)
        self._report(self.persister.page_path(visit.target_dir, url_path))

        children: List[Future] = []
        for element in document.find_all(True):
            if self.token.cancelled:
                break
            for rule in RESOURCE_RULES:
                # children already spawned are returned whatever this element does
                try:
                    ref = extract_reference(element, rule)
                    child = None if ref is None else self._dispatch(visit, ref)
                except Exception:
                    logging.exception(
                        "skipping <%s> on %s", element.name, visit.url
                    )
                    self.stats.add(failures=1)
                    child = None
                if child is not None:
                    children.append(child)
                if self.token.cancelled:
                    break
        return children

    def _dispatch(self, visit: PageVisit, ref: ResourceReference) -> Optional[Future]:
        raw = ref.raw_value.strip()
        try:
            absolute_url, _ = urldefrag(urljoin(visit.url, raw))
            ref_path = urlparse(raw).path
        except ValueError as e:
            logging.warning("unusable reference %r on %s: %s", raw, visit.url, e)
            return None
        if ref.is_page:
            target_dir = local_path(
                self._root, visit.target_dir, posixpath.dirname(ref_path)
            )
            return self._spawn_visit(PageVisit(absolute_url, target_dir))
        destination = local_path(self._root, visit.target_dir, ref_path)
        if destination == self._root or not ref_path or ref_path.endswith("/"):
            logging.warning("no file name for %s on %s", ref.raw_value, visit.url)
            return None
        return self._executor.submit(self._download, DownloadTask(absolute_url, destination))

    def _spawn_visit(self, visit: PageVisit) -> Future:
        done: Future = Future()

        def run() -> None:
            try:
                children = self._visit(visit)
            except Exception:
                logging.exception("unexpected error visiting %s", visit.url)
                self.stats.add(failures=1)
                children = []
            settle_when_all(children, done)

        self._executor.submit(run)
        return done

    def _download(self, task: DownloadTask) -> Optional[Path]:
        try:
            content = self.fetcher.download_bytes(task.absolute_url)
            path = self.persister.save_resource(task.destination, content)
        except FetchCancelled:
            logging.debug("cancelled download: %s", task.absolute_url)
            return None
        except FetchError as e:
            logging.warning("error downloading %s: %s", task.absolute_url, e)
            self.stats.add(failures=1)
            return None
        except OSError as e:
            logging.error("cannot write %s: %s", task.destination, e)
            self.stats.add(failures=1)
            return None
        except Exception:
            logging.exception("unexpected error downloading %s", task.absolute_url)
            self.stats.add(failures=1)
            return None
        logging.debug("downloaded asset: %s -> %s", task.absolute_url, path)
        self.stats.add(resources=1)
        self._report(path)
        return path


# -------------------- Progress --------------------


class ConsoleProgress:
    def __init__(self):
        self.count = 0
        self.lock = Lock()

    def __call__(self, path: Path) -> None:
        with self.lock:
            self.count += 1
            print(f"File {path} has been saved")
            print(f"Downloaded {self.count} files")


# -------------------- Output dir --------------------


def prepare_output_dir(path: Path, clean: bool) -> Path:
    if clean and path.exists():
        logging.info("removing previous mirror: %s", path)
        shutil.rmtree(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool, List[str]]]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        if sys.version_info >= (3, 11):
            import tomllib
        else:
            import tomli as tomllib
        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        try:
            import yaml
        except ImportError:
            raise RuntimeError("YAML config requires 'PyYAML'")
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise RuntimeError("Top-level YAML must be a mapping")
            return data
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")


# -------------------- CLI --------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Mirror a web site to a local directory tree.",
        add_help=True,
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)

    p.add_argument("url", nargs="?", default=DEFAULT_ROOT_URL, help="http(s) URL")
    p.add_argument(
        "output_folder",
        nargs="?",
        default=DEFAULT_OUTPUT_FOLDER,
        help="output directory",
    )
    p.add_argument(
        "--timeout", type=float, default=15.0, help="request timeout seconds"
    )
    p.add_argument(
        "--workers",
        type=int,
        default=0,
        help="worker threads (0 = one thread per page/resource)",
    )
    p.add_argument(
        "--deadline",
        type=float,
        default=1800.0,
        help="stop scheduling new work after N seconds",
    )
    p.add_argument(
        "--chunk-size", type=int, default=64 * 1024, help="download chunk bytes"
    )
    p.add_argument(
        "--clean", action="store_true", help="remove the output folder first"
    )
    p.add_argument(
        "--header",
        action="append",
        default=[],
        help="extra request header 'Name: value'",
    )
    p.add_argument("--verbose", action="store_true", help="debug logging")
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        if isinstance(cfg, dict):
            flat = dict(cfg)
            for g in ("general", "http", "crawl"):
                if isinstance(cfg.get(g), dict):
                    flat.update(cfg[g])
            flat = {k.replace("-", "_"): v for k, v in flat.items()}
            parser.set_defaults(**flat)
    args = parser.parse_args(argv)
    return args


def settings_from_args(args: argparse.Namespace) -> Settings:
    return Settings(
        timeout=max(0.1, args.timeout),
        workers=max(0, args.workers),
        deadline=max(0.0, args.deadline),
        chunk_size=max(1024, args.chunk_size),
        clean=args.clean,
        extra_headers=list(args.header or []),
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    if urlparse(args.url).scheme not in {"http", "https"}:
        print("Invalid URL. Use http:// or https://")
        return 1

    settings = settings_from_args(args)
    print("Web scraper has been started...")
    out_dir = prepare_output_dir(Path(args.output_folder), settings.clean)

    token = CancellationToken(timeout=settings.deadline)
    previous = None
    if threading.current_thread() is threading.main_thread():
        previous = signal.signal(signal.SIGINT, lambda *_: token.cancel())

    session = build_session()
    apply_headers_to_session(session, settings)
    fetcher = Fetcher(
        session, token, timeout=settings.timeout, chunk_size=settings.chunk_size
    )
    crawler = SiteMirror(
        fetcher, Persister(), token, ConsoleProgress(), workers=settings.workers
    )
    try:
        stats = crawler.mirror(args.url, out_dir)
    except FetchCancelled:
        print("Cancelled before the first page was fetched")
        return 130
    except FetchError as e:
        logging.error("Error: %s", e)
        return 1
    finally:
        session.close()
        if previous is not None:
            signal.signal(signal.SIGINT, previous)

    print(f"Web page content saved to {out_dir} folder")
    print(
        f"Pages: {stats.pages}, resources: {stats.resources}, failures: {stats.failures}"
    )
    if token.cancelled:
        print("Crawl was cancelled; partial mirror kept on disk")
    return 0


if __name__ == "__main__":
    sys.exit(main())
