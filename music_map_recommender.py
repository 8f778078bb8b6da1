"""Recommend new artists based on the folders already in a music collection.

The script lists the artist folders of a collection, queries music-map.com for
each artist concurrently, collects the related artists linked on every map page
together with their distance, and prints the artists that show up most often
(closest first on ties) that are not already in the collection.
"""

from __future__ import annotations

import argparse
import concurrent.futures
import logging
import math
import os
import re
import sys
import threading
from dataclasses import dataclass
from decimal import Decimal
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import requests
from bs4 import BeautifulSoup
from tqdm import tqdm

ENV_FILE = Path(__file__).with_name(".env")
DEFAULT_CONFIG = {
    "LOG_FILE": "music_map_recommender.log",
    "NUM_RESULTS": "10",
    "MUSIC_MAP_URL": "https://www.music-map.com/{artist}",
    "REQUEST_TIMEOUT": "",
}


def load_env_file(path: Path) -> Dict[str, str]:
    if not path.exists():
        return {}
    data: Dict[str, str] = {}
    try:
        for raw_line in path.read_text(encoding="utf-8").splitlines():
            line = raw_line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue
            key, value = line.split("=", 1)
            data[key.strip()] = value.strip()
    except OSError as exc:
        raise RuntimeError(f"Failed to read configuration from {path}: {exc}") from exc
    return data


def load_config() -> Dict[str, str]:
    config = dict(DEFAULT_CONFIG)
    for key, value in load_env_file(ENV_FILE).items():
        if not value:
            continue
        config[key] = value
    return config


CONFIG = load_config()

LOG_FILE = Path(CONFIG["LOG_FILE"]).expanduser()
NUM_RESULTS = int(CONFIG["NUM_RESULTS"])
MUSIC_MAP_URL = CONFIG["MUSIC_MAP_URL"]
REQUEST_TIMEOUT: Optional[float] = (
    float(CONFIG["REQUEST_TIMEOUT"]) if CONFIG["REQUEST_TIMEOUT"] else None
)

MAP_LINK_SELECTOR = "#gnodMap a.S"
LINK_ID_PREFIX = "s"
DISTANCE_PATTERN = re.compile(r"\+?[0-9]+")


class RecommenderError(Exception):
    """Base class for every error raised by the recommender."""


class CollectionError(RecommenderError):
    """The collection root could not be enumerated."""


class InvalidComparison(RecommenderError):
    """Two candidates could not be ordered by average distance."""


class FetchError(RecommenderError):
    """A single artist's map page could not be turned into signals."""

    def __init__(self, message: str, url: Optional[str] = None) -> None:
        super().__init__(message)
        self.url = url


class NetworkError(FetchError):
    """Transport failure (DNS, connection, TLS) while requesting a page."""


class HttpStatusError(FetchError):
    """The map page answered with a 4xx/5xx status."""

    def __init__(
        self, message: str, url: Optional[str] = None, status_code: Optional[int] = None
    ) -> None:
        super().__init__(message, url)
        self.status_code = status_code


class BodyReadError(FetchError):
    """The response body could not be read as text."""


class ExtractError(FetchError):
    """A link on the map page did not have the expected shape."""

    def __init__(self, message: str, element: str = "") -> None:
        super().__init__(message)
        self.element = element


class MissingName(ExtractError):
    pass


class MissingId(ExtractError):
    pass


class MalformedId(ExtractError):
    pass


class InvalidId(ExtractError):
    pass


@dataclass(frozen=True)
class ExtractedSignal:
    """One related artist linked from a map page."""

    name: str
    distance: int


@dataclass(frozen=True)
class AggregateEntry:
    """Accumulated signals for one related artist across all map pages."""

    occurrences: int
    distance_sum: int

    @property
    def average_distance(self) -> float:
        return self.distance_sum / self.occurrences


@dataclass(frozen=True)
class FetchOutcome:
    """Result of querying the map page of one known artist."""

    artist: str
    url: str
    signals: Tuple[ExtractedSignal, ...] = ()
    error: Optional[FetchError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class RankedCandidate:
    """A recommended artist, ready to be printed."""

    name: str
    occurrences: int
    average_distance: float


def setup_logging() -> None:
    LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        LOG_FILE,
        maxBytes=1_000_000,
        backupCount=3,
        encoding="utf-8",
    )
    # stdout is reserved for the recommendations
    handlers = [
        file_handler,
        logging.StreamHandler(sys.stderr),
    ]
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=handlers,
    )
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)


def list_known_artists(root: Path) -> List[str]:
    """Return one artist name per subdirectory of ``root``.

    Raises:
        CollectionError: ``root`` cannot be read, or a folder name is not
            valid UTF-8.
    """
    logging.info("Scanning collection at %s", root)
    artists: List[str] = []
    try:
        with os.scandir(root) as entries:
            for entry in entries:
                if not entry.is_dir(follow_symlinks=False):
                    continue
                try:
                    entry.name.encode("utf-8")
                except UnicodeEncodeError as exc:
                    raise CollectionError(f"Invalid folder name {entry.name!r}") from exc
                artists.append(entry.name)
    except OSError as exc:
        raise CollectionError(f"Failed to read collection root {root}: {exc}") from exc
    artists.sort()
    logging.info("Scan complete. Found %d artists.", len(artists))
    return artists


def extract_signals(html_text: str) -> List[ExtractedSignal]:
    """Extract every (artist, distance) link from a music-map page.

    Map links look like ``<a class="S" id="s12">Artist</a>`` inside the
    ``#gnodMap`` element; the number after the ``s`` is the distance from the
    queried artist. A single malformed link fails the whole page.
    """
    soup = BeautifulSoup(html_text, "html.parser")
    signals: List[ExtractedSignal] = []
    for link in soup.select(MAP_LINK_SELECTOR):
        name = next(iter(link.strings), None)
        if name is None:
            raise MissingName(f"Can't find band name on link {link}", element=str(link))
        raw_id = link.get("id")
        if raw_id is None:
            raise MissingId(f"Can't find id on link {link}", element=str(link))
        if not raw_id.startswith(LINK_ID_PREFIX):
            raise MalformedId(f"Malformed id on link {link}", element=str(link))
        digits = raw_id[len(LINK_ID_PREFIX):]
        if not DISTANCE_PATTERN.fullmatch(digits):
            raise InvalidId(f"Invalid id on link {link}: {digits!r}", element=str(link))
        signals.append(ExtractedSignal(name=str(name), distance=int(digits)))
    return signals


class MusicMapClient:
    """Minimal music-map.com client holding one requests session per thread."""

    def __init__(
        self, url_template: str = MUSIC_MAP_URL, timeout: Optional[float] = REQUEST_TIMEOUT
    ) -> None:
        self.url_template = url_template
        self.timeout = timeout
        self._thread = threading.local()

    def _get_session(self) -> requests.Session:
        session = getattr(self._thread, "session", None)
        if session is None:
            session = requests.Session()
            self._thread.session = session
        return session

    def url_for(self, artist_name: str) -> str:
        # Names go in verbatim; requests only requotes characters that are illegal in a URL.
        return self.url_template.format(artist=artist_name)

    def get_page(self, url: str) -> str:
        session = self._get_session()
        try:
            response = session.get(url, timeout=self.timeout, stream=True)
        except requests.RequestException as exc:
            raise NetworkError(f"Error calling {url}: {exc}", url=url) from exc
        try:
            try:
                response.raise_for_status()
            except requests.HTTPError as exc:
                raise HttpStatusError(
                    f"Received error from {url}: {exc}",
                    url=url,
                    status_code=response.status_code,
                ) from exc
            try:
                return response.text
            except (requests.RequestException, UnicodeError) as exc:
                raise BodyReadError(f"Error reading {url}: {exc}", url=url) from exc
        finally:
            response.close()


def fetch_similar_artists(client: MusicMapClient, artist_name: str) -> FetchOutcome:
    """Fetch and parse the map page of ``artist_name``; failures are returned, not raised."""
    url = client.url_for(artist_name)
    try:
        page = client.get_page(url)
        signals = extract_signals(page)
    except FetchError as exc:
        if exc.url is None:
            exc.url = url
        return FetchOutcome(artist=artist_name, url=url, error=exc)
    return FetchOutcome(artist=artist_name, url=url, signals=tuple(signals))


class SignalAggregator:
    """Thread-safe accumulator of signals keyed by related artist name."""

    def __init__(self) -> None:
        self._entries: Dict[str, AggregateEntry] = {}
        self._lock = threading.Lock()

    def merge(self, signals: Iterable[ExtractedSignal]) -> None:
        with self._lock:
            for signal in signals:
                entry = self._entries.get(signal.name)
                if entry is None:
                    self._entries[signal.name] = AggregateEntry(
                        occurrences=1, distance_sum=signal.distance
                    )
                else:
                    self._entries[signal.name] = AggregateEntry(
                        occurrences=entry.occurrences + 1,
                        distance_sum=entry.distance_sum + signal.distance,
                    )

    def snapshot(self) -> Dict[str, AggregateEntry]:
        with self._lock:
            return dict(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def log_fetch_failure(outcome: FetchOutcome) -> None:
    logging.warning("Skipping %s (%s): %s", outcome.artist, outcome.url, outcome.error)


def process_artist(
    artist_name: str, client: MusicMapClient, aggregator: SignalAggregator
) -> FetchOutcome:
    outcome = fetch_similar_artists(client, artist_name)
    if outcome.ok:
        aggregator.merge(outcome.signals)
        logging.debug("Merged %d signal(s) from %s", len(outcome.signals), outcome.url)
    return outcome


def collect_signals(
    artist_names: Sequence[str],
    client: MusicMapClient,
    report: Callable[[FetchOutcome], None] = log_fetch_failure,
) -> Dict[str, AggregateEntry]:
    """Query every artist at once and return the merged signals.

    Every query runs on its own thread; the call returns only once all of them
    have finished. Failed queries are passed to ``report`` and contribute
    nothing.
    """
    aggregator = SignalAggregator()
    if not artist_names:
        return aggregator.snapshot()

    with concurrent.futures.ThreadPoolExecutor(max_workers=len(artist_names)) as executor:
        future_to_artist = {
            executor.submit(process_artist, artist_name, client, aggregator): artist_name
            for artist_name in artist_names
        }
        with tqdm(total=len(artist_names), desc="Querying music-map", unit="artist") as progress:
            for future in concurrent.futures.as_completed(future_to_artist):
                artist_name = future_to_artist[future]
                try:
                    outcome = future.result()
                except Exception as exc:
                    logging.exception("Error processing %s: %s", artist_name, exc)
                else:
                    if not outcome.ok:
                        report(outcome)
                progress.update(1)

    return aggregator.snapshot()


def rank_candidates(
    entries: Mapping[str, AggregateEntry], known_artists: Iterable[str], limit: int
) -> List[RankedCandidate]:
    """Drop known artists, then order by occurrences (desc) and average distance (asc).

    Raises:
        InvalidComparison: an entry has no occurrences, so its average distance
            is undefined.
    """
    if limit < 0:
        raise ValueError(f"limit must be non-negative, got {limit}")
    known = {name.casefold() for name in known_artists}
    candidates: List[RankedCandidate] = []
    for name, entry in entries.items():
        if name.casefold() in known:
            continue
        if entry.occurrences <= 0:
            raise InvalidComparison(f"{name!r} has {entry.occurrences} occurrences")
        average = entry.average_distance
        if math.isnan(average):
            raise InvalidComparison(f"{name!r} has an undefined average distance")
        candidates.append(
            RankedCandidate(name=name, occurrences=entry.occurrences, average_distance=average)
        )
    # Name keys only make ties reproducible; merge order depends on thread timing.
    candidates.sort(
        key=lambda item: (-item.occurrences, item.average_distance, item.name.casefold(), item.name)
    )
    return candidates[:limit]


def format_distance(value: float) -> str:
    if value.is_integer():
        return str(int(value))
    # Shortest round-trip digits, never in exponent notation.
    return format(Decimal(repr(value)), "f")


def format_candidate(candidate: RankedCandidate, verbose: bool = False) -> str:
    if not verbose:
        return candidate.name
    return (
        f"{candidate.name} ({candidate.occurrences} occurrencies, "
        f"{format_distance(candidate.average_distance)} avg distance)"
    )


def print_results(candidates: Sequence[RankedCandidate], verbose: bool = False) -> None:
    for candidate in candidates:
        print(format_candidate(candidate, verbose))


def summarize_results(
    total_artists: int, entries: Mapping[str, AggregateEntry], candidates: Sequence[RankedCandidate]
) -> None:
    logging.info(
        "Finished - %d artist(s) queried, %d related artist(s) found, %d recommended.",
        total_artists,
        len(entries),
        len(candidates),
    )


def parse_arguments(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    def result_count(value: str) -> int:
        try:
            count = int(value)
        except ValueError:
            raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}")
        if count < 0:
            raise argparse.ArgumentTypeError(f"number of results must be >= 0, got {count}")
        return count

    parser = argparse.ArgumentParser(
        description="Find artists related to your collection using music-map.com."
    )
    parser.add_argument(
        "folder",
        type=Path,
        help="Collection root folder, one subfolder per artist.",
    )
    parser.add_argument(
        "-n",
        "--num-results",
        type=result_count,
        default=NUM_RESULTS,
        metavar="N",
        help=f"Number of results (default {NUM_RESULTS}).",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show additional data, like average distance.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_arguments(argv)
    setup_logging()
    logging.info("Music map recommender started.")

    try:
        known_artists = list_known_artists(args.folder)
    except CollectionError as exc:
        logging.error("%s", exc)
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    if not known_artists:
        logging.warning("No artist folders found in %s.", args.folder)
        return

    client = MusicMapClient()
    entries = collect_signals(known_artists, client)

    try:
        candidates = rank_candidates(entries, known_artists, args.num_results)
    except InvalidComparison as exc:
        logging.error("Ranking failed: %s", exc)
        print(f"Error: ranking failed: {exc}", file=sys.stderr)
        sys.exit(1)

    print_results(candidates, verbose=args.verbose)
    summarize_results(len(known_artists), entries, candidates)


if __name__ == "__main__":
    main()
