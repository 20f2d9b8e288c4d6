#!/usr/bin/env python3
"""
Markovianomatic - build a random text with Markov-ish rules

This script is the command line host of the Markov chain. It:
1. Lists the chains already persisted in PostgreSQL and lets the user use,
   append to or replace one of them
2. Trains the chain from a seed file or from text typed live on stdin
3. Saves the chain back to its collection
4. Prints a generated text
"""
import io
import os
import sys
import time
import random
import argparse

# Add project root to Python path to ensure imports work correctly
current_dir = os.path.dirname(os.path.abspath(__file__))
project_root = os.path.abspath(os.path.join(current_dir, '..', '..', '..'))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

from models.production_models.markov_chain.markov_chain import MarkovChain
from utils.database_adapters.postgresql.markov_chain import MarkovChainPostgreSqlAdapter
from utils.loggers.json_logger import get_logger, log_json
from utils.system_monitoring import ResourceMonitor

USE_RESPONSES = {"u", "U", "use", "Use", "USE"}
APPEND_RESPONSES = {"a", "A", "app", "append", "Append", "App", "APPEND", "APP"}
NEW_RESPONSES = {"n", "N", "no", "No", "NO", "new", "NEW", "New"}
EXIT_RESPONSES = {"exit", "quit", "Q", "q"}


class MarkovChainSession:
    """
    One interactive run of the generator.

    Input, output and the persistence adapter are injectable so the whole
    dialogue can be driven from tests.
    """

    def __init__(self, words=100, prefix_length=2, seed_file=None, verbose=False,
                 environment="development", log_file=None, db_adapter=None, memory_warning_mb=None,
                 input_func=input, stdin=None, stdout=None, stderr=None):
        """
        Args:
            words (int): Maximum number of words to print
            prefix_length (int): Prefix length in words
            seed_file (str, optional): Text file to use as seed instead of stdin
            verbose (bool): Print the chain table and log every association
            environment (str): Database environment ('development', 'test', ...)
            log_file (str, optional): JSON log file, "auto" for a timestamped one
            db_adapter (MarkovChainPostgreSqlAdapter, optional): Adapter to use
            memory_warning_mb (float, optional): Log a warning when resident memory exceeds it
        """
        self.words = words
        self.prefix_length = prefix_length
        self.seed_file = seed_file
        self.verbose = verbose
        self.environment = environment
        self.input_func = input_func
        self.stdin = stdin or sys.stdin
        self.stdout = stdout or sys.stdout
        self.stderr = stderr or sys.stderr

        self.logger = get_logger(f"markovianomatic_{environment}", log_file=log_file)
        self.resource_monitor = ResourceMonitor(
            logger=self.logger, monitoring_interval=5.0, memory_warning_mb=memory_warning_mb)
        self.rng = random.Random(time.time_ns())

        if db_adapter is None:
            db_adapter = MarkovChainPostgreSqlAdapter(environment=environment, logger=self.logger)
        self.db_adapter = db_adapter

        if not self.db_adapter.is_usable():
            self.logger.warning("Database adapter is not usable - running in memory only", extra={
                "metrics": {"environment": environment}
            })

    def _say(self, message, err=False):
        stream = self.stderr if err else self.stdout
        stream.write(message)
        stream.flush()

    def ask_for_confirmation(self):
        """
        Asks what to do with the existing collections until a valid answer is given.

        Returns:
            str: "use", "append", "new" or "quit" (an empty answer means "new")
        """
        while True:
            try:
                response = self.input_func().strip()
            except EOFError:
                response = ""

            if not response or response in NEW_RESPONSES:
                return "new"
            if response in USE_RESPONSES:
                return "use"
            if response in APPEND_RESPONSES:
                return "append"
            if response in EXIT_RESPONSES:
                return "quit"
            self._say("Please type use|append|new and then press enter: ", err=True)

    def choose_collection(self, names):
        """
        Lists the collections and asks for an index until a valid one is typed.

        Returns:
            int or None: Index of the chosen collection, None when input ends
        """
        for i, name in enumerate(names):
            self._say(f"[{i}] {name}\n")
        self._say("----\n")

        msg = ""
        while True:
            self._say(f"[0-{len(names) - 1:02d}]: {msg} ")
            try:
                choice = int(self.input_func().strip())
            except ValueError:
                choice = -1
            except EOFError:
                self._say("\n")
                return None
            if 0 <= choice < len(names):
                return choice
            msg = "(nope)"

    def new_chain(self):
        """Asks for a collection name and returns an empty chain bound to it."""
        self._say("Collection name: ")
        try:
            name = self.input_func().strip()
        except EOFError:
            name = ""
        return self._make_chain(name)

    def _make_chain(self, name):
        return MarkovChain(
            prefix_length=self.prefix_length,
            verbose=self.verbose,
            name=name,
            logger=self.logger,
            db_adapter=self.db_adapter if self.db_adapter.is_usable() else None,
            rng=self.rng,
            resource_monitor=self.resource_monitor
        )

    def load_chain(self, name):
        """Returns a chain rehydrated from an existing collection."""
        chain = self._make_chain(name)
        loaded = chain.restore()
        self._say(f"Using {name} with {loaded} prefixes\n")
        return chain

    def train(self, chain):
        """
        Feeds the chain from the seed file, or live from stdin.

        Raises:
            OSError: the seed file cannot be read
        """
        self.resource_monitor.start("markov_build")
        try:
            if self.seed_file:
                return chain.load(self.seed_file)

            self._say("-- Markovianomatic live -- \n\ntype your text (Enter x2 to stop)...\n\n")
            return chain.build(self.stdin, live=True)
        finally:
            self.resource_monitor.stop()

    def save(self, chain):
        """Persists the chain, reporting instead of failing when the database is unavailable."""
        self.resource_monitor.start("markov_save")
        try:
            stats = chain.save()
        finally:
            self.resource_monitor.stop()

        if "error" in stats:
            self._say(f"Chain not saved: {stats['error']}\n", err=True)
        elif stats["failed"]:
            self._say(f"{stats['failed']} prefixes could not be saved in {stats['collection']}\n", err=True)
        return stats

    def run(self):
        """
        Runs the whole dialogue.

        Returns:
            int: Process exit code
        """
        names = self.db_adapter.list_collections() if self.db_adapter.is_usable() else []

        if not names:
            self._say("There are no available PrefixBase. Start from scratch\n", err=True)
            what = "new"
            chain = self.new_chain()
        else:
            self._say("Want to [u]se, [a]ppend an existing DB? [n]o(new) [q]uit ")
            what = self.ask_for_confirmation()
            index = None
            if what in ("use", "append"):
                index = self.choose_collection(names)
                if index is None:
                    what = "quit"
            if what == "quit":
                self._say("Bye\n\n", err=True)
                return 1
            if index is not None:
                chain = self.load_chain(names[index])
            else:
                chain = self.new_chain()

        if what in ("new", "append"):
            try:
                stats = self.train(chain)
            except (OSError, UnicodeDecodeError) as e:
                self._say(f"Cannot read seed file: {e}\n", err=True)
                return 1
            log_json(self.logger, "Training finished", stats, collection=chain.collection)

            if chain.length() == 0:
                self._say("Empty text map. Cannot generate text\n")
                return 1

            if self.verbose:
                chain.pretty(self.stdout)
            self.save(chain)

        generated = chain.generate(io.StringIO(), self.words)
        self._say(generated.getvalue() + "\n")
        return 0

    def close(self):
        self.db_adapter.close_connections()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="markovianomatic",
        description="Build a random text with Markov-ish rules")
    parser.add_argument("--words", type=int, default=100,
                        help="maximum number of words to print (default: 100)")
    parser.add_argument("--prefix", type=int, default=2,
                        help="prefix length in words (default: 2)")
    parser.add_argument("--file", default="",
                        help="text file to use as seed (default: read stdin)")
    parser.add_argument("--verbose", action="store_true",
                        help="I wanna read useless stuff")
    parser.add_argument("--env", choices=["development", "test", "production"],
                        default="development", help="Environment (default: development)")
    parser.add_argument("--log-file", default=None,
                        help="JSON log file, 'auto' for logs/markovianomatic_<timestamp>.log")
    parser.add_argument("--memory-warning", type=float, default=None, metavar="MB",
                        help="warn when resident memory exceeds MB during build and save")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)

    if args.words < 1:
        print("Prefix too short: --words must be at least 1", file=sys.stderr)
        return 1

    session = MarkovChainSession(
        words=args.words,
        prefix_length=args.prefix,
        seed_file=args.file or None,
        verbose=args.verbose,
        environment=args.env,
        log_file=args.log_file,
        memory_warning_mb=args.memory_warning
    )
    try:
        return session.run()
    finally:
        session.close()


if __name__ == "__main__":
    sys.exit(main())
