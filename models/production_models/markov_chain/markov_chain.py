import re
import sys
import time
import queue
import random
import signal
import threading
from datetime import datetime, timezone

from utils.loggers.json_logger import get_logger
from utils.read_write_lock import ReadWriteLock
from data_preprocessing.text_preprocessor import TextPreprocessor
from models.production_models.markov_chain.prefix import Prefix

# A key starting with an empty slot followed by a real word marks a text start
STARTER_PATTERN = re.compile(r"\s\w")

# Consecutive blank lines ending a live session
LIVE_STOP_BLANK_LINES = 2

DEFAULT_WORK_FORCE = 5


def time_name():
    """Default collection name for a chain saved without one, e.g. dict_20240131T235959."""
    return datetime.now(timezone.utc).strftime("dict_%Y%m%dT%H%M%S")


def is_starter(key):
    """True when a prefix key may begin a generated text."""
    return key.startswith(" ") and STARTER_PATTERN.search(key) is not None


class MarkovChain:
    """
    A word level Markov chain for text generation.

    The chain maps a prefix key (the last N words joined by a space) to the list of
    words observed right after it. Duplicates are kept: a suffix seen k times is
    listed k times, which is what weights the random walk. Keys that begin with an
    empty slot are text starts ("starters") and seed every generated text.
    """

    def __init__(
        self,
        prefix_length=Prefix.MIN_LENGTH,
        verbose=False,
        name="",
        logger=None,
        db_adapter=None,
        rng=None,
        resource_monitor=None
    ):
        """
        Initializes an empty Markov Chain.

        Args:
            prefix_length (int): Number of words in a prefix (at least 2)
            verbose (bool): Log every association and starter at INFO level
            name (str): Collection name used when saving/restoring (strictly sanitized)
            logger (Logger, optional): Logger instance, a JSON logger is created if missing
            db_adapter (MarkovChainPostgreSqlAdapter, optional): Persistence adapter
            rng (random.Random, optional): Random source for generation, time-seeded if missing
            resource_monitor (ResourceMonitor, optional): Receives save progress when given
        """
        self.prefix_length = max(prefix_length, Prefix.MIN_LENGTH)
        self.verbose = verbose
        self.logger = logger or get_logger("markov_chain", clear_existing=False)
        self.db_adapter = db_adapter
        self.rng = rng or random.Random(time.time_ns())
        self.preprocessor = TextPreprocessor()
        self.collection = self.preprocessor.sanitize(name or "", strict=True)
        self.resource_monitor = resource_monitor

        self._chain = {}
        self._starters = {}
        # Number of choices per key already stored in the collection
        self._persisted = {}
        self._lock = ReadWriteLock()
        self._build_done = None
        self._build_cancelled = False

        self.logger.info("MarkovChain initialized", extra={
            "metrics": {
                "prefix_length": self.prefix_length,
                "collection": self.collection or None,
                "persistence": db_adapter is not None,
            }
        })

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def _record_starter(self, key):
        if is_starter(key) and key not in self._starters:
            self._starters[key] = None
            if self.verbose:
                self.logger.info(f"New starter: [{key}]")

    def insert(self, token, prefix):
        """
        Records the token as a suffix of the current prefix, then advances the prefix.

        Args:
            token (str): Raw token, sanitized before use
            prefix (Prefix): The live prefix of the ongoing build

        Returns:
            bool: False when the token sanitized to nothing and was skipped
        """
        word = self.preprocessor.sanitize(token)
        if not word:
            return False

        key = str(prefix)
        if self.verbose:
            self.logger.info(f"Association: |{key}| -> [{word}]")

        with self._lock.write_locked():
            self._chain.setdefault(key, []).append(word)
            self._record_starter(key)

        prefix.shift(word)
        return True

    def set(self, key, choices, persisted=False):
        """
        Loads an already known (key, choices) pair, e.g. from persisted storage.
        No sanitizing, no prefix shifting.

        Args:
            key (str): Prefix key
            choices (list): Suffix words, duplicates included
            persisted (bool): The choices are already stored in the collection,
                              so a later save only appends what is added after them
        """
        with self._lock.write_locked():
            self._chain[key] = list(choices)
            if persisted:
                self._persisted[key] = len(choices)
            else:
                self._persisted.pop(key, None)
            self._record_starter(key)

    # ------------------------------------------------------------------
    # Building
    # ------------------------------------------------------------------

    def _consume_line(self, line, prefix, stats, done=None):
        for token in self.preprocessor.tokenize(line):
            if done is not None and done.is_set():
                return
            if self.insert(token, prefix):
                stats["tokens"] += 1
            else:
                stats["skipped"] += 1

    def _read_live(self, stream, prefix, stats, done):
        """Reader task of a live build: stops on two blank lines in a row or end of stream."""
        blank_lines = 0
        try:
            for line in iter(stream.readline, ""):
                if done.is_set():
                    break

                if not line.strip():
                    stats["empty_reads"] += 1
                    blank_lines += 1
                    if self.verbose:
                        self.logger.info(f"Write empty ({blank_lines})")
                    if blank_lines >= LIVE_STOP_BLANK_LINES:
                        break
                    continue

                blank_lines = 0
                self._consume_line(line, prefix, stats, done)
        except (OSError, ValueError) as e:
            self.logger.error(f"Scan error: {e}", extra={
                "metrics": {"error_type": type(e).__name__}
            })
        finally:
            done.set()

    def stop_build(self):
        """Cancels a running live build. No new tokens are read afterwards."""
        done = self._build_done
        if done is not None and not done.is_set():
            self._build_cancelled = True
            done.set()

    def _handle_interrupt(self, signum, frame):
        if self.verbose:
            self.logger.info("Received an interrupt, stopping services...")
        self.stop_build()

    def build(self, stream, live=False):
        """
        Reads whitespace delimited tokens from a stream into the chain.

        Batch mode reads to the end of the stream. Live mode reads until two
        consecutive blank lines, the end of the stream or an interrupt (SIGINT).

        Args:
            stream: Text stream (file object, sys.stdin, io.StringIO...)
            live (bool): Interactive session

        Returns:
            dict: Build statistics
        """
        prefix = Prefix(self.prefix_length)
        stats = {"tokens": 0, "empty_reads": 0, "skipped": 0}
        start_time = time.time()

        self.logger.info("Build started", extra={
            "metrics": {"mode": "live" if live else "batch", "prefix_length": self.prefix_length}
        })

        if live:
            self._build_live(stream, prefix, stats)
        else:
            for line in stream:
                if not line.strip():
                    stats["empty_reads"] += 1
                    continue
                self._consume_line(line, prefix, stats)

        return self._build_stats(stats, start_time)

    def _build_live(self, stream, prefix, stats):
        done = threading.Event()
        self._build_done = done
        self._build_cancelled = False

        previous_handler = None
        on_main_thread = threading.current_thread() is threading.main_thread()
        if on_main_thread:
            previous_handler = signal.signal(signal.SIGINT, self._handle_interrupt)

        reader = threading.Thread(
            target=self._read_live,
            args=(stream, prefix, stats, done),
            name="markov-live-reader",
            daemon=True  # may stay blocked on a console read after an interrupt
        )
        try:
            reader.start()
            # Short waits keep the main thread responsive to signals
            while not done.wait(0.1):
                pass
        finally:
            if on_main_thread:
                signal.signal(signal.SIGINT, previous_handler)
            self._build_done = None

    def _build_stats(self, stats, start_time):
        stats.update({
            "prefixes": self.length(),
            "starters": len(self.starters()),
            "cancelled": self._build_cancelled,
            "training_time": time.time() - start_time,
        })
        self._build_cancelled = False

        self.logger.info("Build completed", extra={"metrics": stats})
        return stats

    def load(self, path):
        """
        Reads a text file line by line into the chain.

        Args:
            path (str): Seed file

        Returns:
            dict: Build statistics

        Raises:
            OSError, UnicodeDecodeError: the file cannot be opened or read
        """
        prefix = Prefix(self.prefix_length)
        stats = {"tokens": 0, "empty_reads": 0, "skipped": 0}
        start_time = time.time()

        try:
            with open(path, "r", encoding="utf-8") as f:
                for line in f:
                    self._consume_line(line, prefix, stats)
        except (OSError, UnicodeDecodeError) as e:
            self.logger.error(f"Cannot read seed file {path}: {e}", extra={
                "metrics": {"path": path, "error_type": type(e).__name__}
            })
            raise

        return self._build_stats(stats, start_time)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def keys(self):
        """Returns the prefix keys in no particular order."""
        with self._lock.read_locked():
            return list(self._chain)

    def prefixes(self):
        """Returns the prefix keys sorted ascending."""
        return sorted(self.keys())

    def prefix(self, key):
        """Returns the suffixes recorded for a key (empty list if unknown)."""
        with self._lock.read_locked():
            return list(self._chain.get(key, []))

    def starters(self):
        """Returns the keys eligible to start a generated text, in discovery order."""
        with self._lock.read_locked():
            return list(self._starters)

    def length(self):
        """Number of prefix keys."""
        with self._lock.read_locked():
            return len(self._chain)

    def __len__(self):
        return self.length()

    def random_key(self):
        """Returns a uniformly chosen starter, or "" if there is none."""
        starters = self.starters()
        if not starters:
            return ""
        return self.rng.choice(starters)

    def __str__(self):
        with self._lock.read_locked():
            return "\n".join(
                f"[{key}]: {', '.join(self._chain[key])}" for key in sorted(self._chain)
            )

    def pretty(self, stream=None, max_col_width=50):
        """
        Prints the chain as a colored index | prefix key | choices table.

        Args:
            stream: Output stream (stdout by default)
            max_col_width (int): Cells longer than this are truncated
        """
        stream = stream or sys.stdout

        def cell(value):
            value = str(value)
            if len(value) > max_col_width:
                return value[:max_col_width - 3] + "..."
            return value

        with self._lock.read_locked():
            rows = [(f"{i:03d}", cell(key), cell(self._chain[key]))
                    for i, key in enumerate(sorted(self._chain))]

        key_width = max([len("Prefix key")] + [len(row[1]) for row in rows])
        stream.write("--------------\n")
        stream.write(f"{'Index':>5} |{'Prefix key':<{key_width + 2}}| Available choices\n")
        for index, key, choices in rows:
            stream.write(
                f"\033[0;37m {index} \033[0m|"
                f"\033[0;32m {key:<{key_width}} \033[0m|"
                f"\033[0;33m {choices} \033[0m\n"
            )
        stream.write("--------------\n")

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def generate(self, stream, n):
        """
        Writes at most n words produced by a random walk over the chain.

        Each word is followed by a single space. The walk stops early when the
        current prefix has no recorded suffix.

        Args:
            stream: Writable text stream
            n (int): Maximum number of words

        Returns:
            The stream that was written to

        Raises:
            ValueError: n is lower than 1
        """
        if n < 1:
            raise ValueError("Prefix too short")

        if self.length() == 0:
            self.logger.warning("Empty text map. Cannot generate text")
            return stream

        self.logger.info(
            f"{self.length()} prefixes, prefixes {self.prefix_length} long. generating text ...")

        prefix = Prefix(self.prefix_length)
        key = self.random_key()
        words_generated = 0

        for i in range(n):
            choices = self.prefix(key)

            if self.verbose:
                self.logger.info(f"Current key: [{key}], choices: {choices}", extra={
                    "metrics": {"iteration": i, "prefix": str(prefix)}
                })

            if not choices:
                self.logger.info("No more choices!", extra={
                    "metrics": {"words_generated": words_generated, "last_key": key}
                })
                break

            word = self.rng.choice(choices)
            stream.write(word)
            stream.write(" ")
            words_generated += 1

            # Seed the window with the starter's own words first
            if i == 0:
                for starter_word in key.split(" "):
                    prefix.shift(starter_word)
            prefix.shift(word)
            key = str(prefix)

        self.logger.info("Text generation completed", extra={
            "metrics": {"words_requested": n, "words_generated": words_generated}
        })
        return stream

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _adapter_usable(self):
        return self.db_adapter is not None and self.db_adapter.is_usable()

    def _report_save_progress(self, done, total):
        percent = round(done / total * 100, 1)
        message = f"Node ({done}/{total})"
        if self.resource_monitor is not None:
            self.resource_monitor.log_progress(
                message, progress_percent=percent, operation="markov_save",
                extra_metrics={"collection": self.collection})
        else:
            self.logger.info(message, extra={
                "metrics": {"progress_percent": percent},
                "collection": self.collection
            })

    def save(self, work_force=DEFAULT_WORK_FORCE):
        """
        Persists (inserts or appends to) every chain entry in the collection.

        Only the choices added since the entry was restored or last saved are sent,
        so stored frequencies accumulate without counting anything twice. Entries
        are fanned out to a fixed pool of worker threads through a bounded queue.
        Failed upserts are logged and counted, never retried.

        Args:
            work_force (int): Number of worker threads

        Returns:
            dict: Save statistics, or {"error": ...} when nothing could be saved

        Raises:
            ValueError: work_force is lower than 1
        """
        if work_force < 1:
            raise ValueError(f"work_force must be at least 1, got {work_force}")

        if not self._adapter_usable():
            self.logger.warning("Save skipped - no usable database adapter")
            return {"error": "No usable database adapter"}

        if not self.collection:
            self.collection = time_name()

        handle = self.db_adapter.connect(self.collection)
        if handle is None:
            self.logger.error("Save failed - collection unavailable", extra={
                "collection": self.collection
            })
            return {"error": f"Collection {self.collection} unavailable"}

        with self._lock.read_locked():
            jobs = []
            for key in sorted(self._chain):
                choices = self._chain[key]
                baseline = self._persisted.get(key, 0)
                if len(choices) > baseline:
                    jobs.append((key, choices[baseline:], len(choices)))
            unchanged = len(self._chain) - len(jobs)

        total = len(jobs)
        results = {"saved": 0, "failed": 0}
        stored = {}
        results_lock = threading.Lock()
        jobs_queue = queue.Queue(maxsize=work_force)
        start_time = time.time()

        def worker():
            while True:
                job = jobs_queue.get()
                if job is None:
                    return
                key, new_choices, stored_count = job
                ok = self.db_adapter.upsert_entry(handle, key, new_choices)
                with results_lock:
                    if ok:
                        results["saved"] += 1
                        stored[key] = stored_count
                    else:
                        results["failed"] += 1

        workers = [
            threading.Thread(target=worker, name=f"markov-save-{i}", daemon=True)
            for i in range(work_force)
        ]
        for thread in workers:
            thread.start()

        report_every = max(1, total // 10)
        for i, job in enumerate(jobs, start=1):
            jobs_queue.put(job)
            if i % report_every == 0 or i == total:
                self._report_save_progress(i, total)

        for _ in workers:
            jobs_queue.put(None)
        for thread in workers:
            thread.join()

        with self._lock.write_locked():
            self._persisted.update(stored)

        stats = {
            "collection": self.collection,
            "saved": results["saved"],
            "failed": results["failed"],
            "unchanged": unchanged,
            "save_time": time.time() - start_time,
        }
        if stats["failed"]:
            self.logger.warning("Chain saved with failures", extra={
                "metrics": stats, "collection": self.collection})
        else:
            self.logger.info("Chain saved", extra={"metrics": stats, "collection": self.collection})
        return stats

    def restore(self):
        """
        Rehydrates the chain from its collection.

        Returns:
            int: Number of entries loaded

        Raises:
            ValueError: No usable adapter or no collection name
        """
        if not self._adapter_usable():
            raise ValueError("Database adapter is not usable - cannot restore chain")
        if not self.collection:
            raise ValueError("Collection name required to restore chain")

        handle = self.db_adapter.connect(self.collection)
        if handle is None:
            raise ValueError(f"Collection {self.collection} unavailable")

        self.logger.info(f"Using {self.collection} with {self.db_adapter.count_entries(handle)} prefixes",
                         extra={"collection": self.collection})

        loaded = 0
        for node in self.db_adapter.iterate_all(handle):
            self.set(node["key"], node["choices"], persisted=True)
            loaded += 1

        self.logger.info("Chain restored", extra={
            "metrics": {"entries": loaded, "starters": len(self.starters())},
            "collection": self.collection
        })
        return loaded

    def close(self):
        """Closes the persistence adapter connections."""
        if self.db_adapter is not None:
            self.db_adapter.close_connections()
