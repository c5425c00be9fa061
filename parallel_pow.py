import sys
import os
import shlex
import logging
import argparse
import selectors
import subprocess
import multiprocessing
from dataclasses import dataclass
from cryptography.hazmat.primitives import hashes

log = logging.getLogger(__name__)

DEFAULT_WORKER_COMMAND = ("./sha1-pow",)


class PowError(Exception):
    pass


class InvalidArgument(PowError, ValueError):
    pass


class WorkerCountError(PowError, EnvironmentError):
    pass


class NoSolutionError(PowError, RuntimeError):
    pass


@dataclass(frozen=True)
class SearchDescriptor:
    prefix: str
    difficulty: str

    def validate(self):
        if not self.prefix:
            raise InvalidArgument("prefix is required")
        if not self.difficulty:
            raise InvalidArgument("difficulty is required")


# --- WORKER COUNT ---
def detect_worker_count():
    """Number of processing units, never silently 1."""
    try:
        cpus = multiprocessing.cpu_count()
    except NotImplementedError as e:
        raise WorkerCountError("Can't get number of CPU cores") from e
    if cpus < 1:
        raise WorkerCountError(f"Can't get number of CPU cores (got {cpus})")
    return cpus


def parse_worker_count(value):
    try:
        count = int(value)
    except (TypeError, ValueError) as e:
        raise WorkerCountError(f"Invalid worker count: {value!r}") from e
    if count < 1:
        raise WorkerCountError(f"Worker count must be positive, got {count}")
    return count


def _check_worker_count(worker_count):
    if isinstance(worker_count, bool) or not isinstance(worker_count, int):
        raise WorkerCountError(f"Invalid worker count: {worker_count!r}")
    if worker_count < 1:
        raise WorkerCountError(f"Worker count must be positive, got {worker_count}")


# --- WORKER LIFECYCLE ---
def spawn_workers(descriptor, worker_count, worker_command, stdout_fd, handles):
    """Appends a handle per started worker; ones that fail to launch are left out of the race."""
    argv = [*worker_command, descriptor.prefix, descriptor.difficulty]
    for slot in range(worker_count):
        try:
            handles.append(subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=stdout_fd,
                stderr=subprocess.DEVNULL,
            ))
        except OSError as e:
            log.debug("worker %d failed to start: %s", slot, e)
    log.debug("%d of %d workers started", len(handles), worker_count)


def wait_for_any(handles):
    """Blocks until one of the handles exits. Blocks forever when there are none."""
    with selectors.DefaultSelector() as selector:
        pidfds = []
        try:
            for handle in handles:
                try:
                    pidfd = os.pidfd_open(handle.pid)
                except ProcessLookupError:
                    # already reaped
                    return
                pidfds.append(pidfd)
                selector.register(pidfd, selectors.EVENT_READ)
            while not selector.select():
                pass
        finally:
            for pidfd in pidfds:
                os.close(pidfd)


def terminate_workers(handles):
    """SIGKILLs and reaps every handle. Workers that already exited are fine."""
    for handle in handles:
        try:
            handle.kill()
        except ProcessLookupError:
            pass
        except OSError as e:
            log.debug("could not kill worker %s: %s", handle.pid, e)
    for handle in handles:
        handle.wait()


# --- COORDINATOR ---
def find_pow(descriptor, worker_count, worker_command=DEFAULT_WORKER_COMMAND):
    """
    Races `worker_count` copies of the worker on the same descriptor and
    returns the first solution line any of them prints.

    All workers share one pipe as stdout. The read end is consumed exactly
    once, after the first worker exits, and every worker is killed before
    this returns or raises. If no worker could be started the call blocks
    indefinitely; callers that need a bound must impose it themselves.
    """
    descriptor.validate()
    _check_worker_count(worker_count)

    read_fd, write_fd = os.pipe()
    handles = []
    try:
        with os.fdopen(read_fd, "rb") as channel:
            try:
                spawn_workers(descriptor, worker_count, worker_command, write_fd, handles)
            finally:
                os.close(write_fd)

            wait_for_any(handles)
            line = channel.readline()
    finally:
        terminate_workers(handles)

    if not line:
        raise NoSolutionError("all workers exited without a solution")
    try:
        return line.decode("ascii").strip()
    except UnicodeDecodeError as e:
        raise NoSolutionError(f"worker printed a non-ASCII solution: {line!r}") from e


def sha1_hexdigest(text):
    digest = hashes.Hash(hashes.SHA1())
    digest.update(text.encode())
    return digest.finalize().hex()


# --- MAIN EXECUTION ---
def build_parser():
    parser = argparse.ArgumentParser(
        prog="parallel-pow",
        description="Run one proof-of-work worker per CPU core and print the first solution.",
    )
    parser.add_argument("prefix", help="string the solution suffix is appended to")
    parser.add_argument("difficulty", help="passed to the worker unchanged")
    parser.add_argument(
        "-w", "--worker",
        default=shlex.join(DEFAULT_WORKER_COMMAND),
        help="worker command line (default: %(default)s)",
    )
    parser.add_argument(
        "-j", "--workers",
        help="number of workers (default: number of CPU cores)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    descriptor = SearchDescriptor(args.prefix, args.difficulty)
    try:
        if args.workers is not None:
            worker_count = parse_worker_count(args.workers)
        else:
            worker_count = detect_worker_count()
        pow_suffix = find_pow(descriptor, worker_count, shlex.split(args.worker))
    except PowError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nAborted by user.", file=sys.stderr)
        return 130

    full_string = descriptor.prefix + pow_suffix
    print(pow_suffix, flush=True)
    print(f"Full string: {full_string}", file=sys.stderr)
    print(f"SHA1 digest: {sha1_hexdigest(full_string)}", file=sys.stderr)
    return 0


if __name__ == "__main__":
    sys.exit(main())
