"""
Chain persistence utilities.

This module provides:
- make_run_id: random run identifier used to disambiguate output files
- chain_file_paths: names of the files written by one run
- ChunkBuffer: bounded in-memory buffer of chain snapshots
- ChainWriter: append-only writer owning every output handle of a run
- load_chain: read the chain files of a finished run back into arrays

File layout for a run with identifier ID and p regimes:
    {dir}/{outname}.{ID}.loglik      one log-likelihood per line
    {dir}/{outname}.{ID}.root        k root values per line
    {dir}/{outname}.{ID}.{i}.matrix  k*k entries of matrix i per line (row-major)
    {dir}/{outname}.{ID}.mcmc.log    per-generation progress/acceptance log

Numeric rows use '; ' as separator and full float precision.
"""

import logging
import logging.handlers
from collections import deque
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np

from .settings import ID_ALPHABET

logger = logging.getLogger('ratemcmc')

DELIMITER = '; '
FLOAT_FORMAT = '%.17g'

# Shared by every run; each run's handler filters on its run_id
CHAIN_LOGGER_NAME = 'ratemcmc.chain'


def make_run_id(id_len: int, rng: Optional[np.random.Generator] = None) -> str:
    """
    Random alphanumeric run identifier.

    Drawn from fresh OS entropy by default so that chains started with the
    same seed in the same directory still get distinct names. Collisions are
    not detected; choose id_len large enough for the number of runs.
    """
    rng = np.random.default_rng() if rng is None else rng
    return ''.join(rng.choice(list(ID_ALPHABET), size=int(id_len)))


def chain_file_paths(output_dir, outname: str, run_id: str, n_regimes: int) -> Dict[str, Any]:
    """
    Paths of every file written by a run.

    Returns:
        Dict with 'loglik', 'root', 'matrices' (list, one per regime) and 'log'
    """
    base = Path(output_dir)
    stem = f"{outname}.{run_id}"
    return {
        'loglik': base / f"{stem}.loglik",
        'root': base / f"{stem}.root",
        'matrices': [base / f"{stem}.{i + 1}.matrix" for i in range(n_regimes)],
        'log': base / f"{stem}.mcmc.log",
    }


class ChunkBuffer:
    """
    Bounded buffer of chain snapshots between flushes.

    Holds at most chunk + 1 snapshots. When full, the first `chunk` are
    handed out for writing and the last one stays behind as the first,
    still unwritten, entry of the next chunk. Every snapshot is therefore
    written exactly once.
    """

    def __init__(self, chunk: int, first):
        if chunk < 1:
            raise ValueError(f"chunk must be >= 1, got {chunk}")
        self.chunk = int(chunk)
        self._states = deque([first], maxlen=self.chunk + 1)

    def __len__(self):
        return len(self._states)

    @property
    def current(self):
        """Most recent snapshot (the chain's current state)."""
        return self._states[-1]

    def append(self, state) -> None:
        if self.is_full:
            raise RuntimeError("ChunkBuffer is full; take_chunk() before appending")
        self._states.append(state)

    @property
    def is_full(self) -> bool:
        return len(self._states) == self.chunk + 1

    def take_chunk(self) -> List[Any]:
        """Remove and return the first `chunk` snapshots, keeping the last one."""
        last = self._states.pop()
        states = list(self._states)
        self._states.clear()
        self._states.append(last)
        return states

    def drain(self) -> List[Any]:
        """Remove and return every remaining snapshot."""
        states = list(self._states)
        self._states.clear()
        return states


class ChainWriter:
    """
    Append-only writer for the chain files of one run.

    Opens one handle per tracked quantity plus a handler for the
    per-generation log, and releases all of them on exit (normal or not).

    Every run logs through the shared 'ratemcmc.chain' logger. The run's
    handler only accepts records tagged with its run_id, and buffers up to
    log_capacity lines in memory; the buffer is written to the log file
    whenever a chunk of states is written and on close.

    Example:
        with ChainWriter(paths, run_id, log_capacity=chunk) as writer:
            writer.log("...")
            writer.write_states(states)
    """

    def __init__(self, paths: Dict[str, Any], run_id: str, log_capacity: int = 100):
        self.paths = paths
        self.run_id = run_id
        self.log_capacity = max(int(log_capacity), 1)
        self._handles = {}
        self._log_handler = None
        self.chain_logger = logging.getLogger(CHAIN_LOGGER_NAME)
        self.lines_written = 0

    def __enter__(self):
        try:
            self._handles['loglik'] = open(self.paths['loglik'], 'a')
            self._handles['root'] = open(self.paths['root'], 'a')
            for i, path in enumerate(self.paths['matrices']):
                self._handles[f'matrix_{i}'] = open(path, 'a')

            file_handler = logging.FileHandler(self.paths['log'], mode='a')
            file_handler.setFormatter(logging.Formatter('%(message)s'))
            self._log_handler = logging.handlers.MemoryHandler(
                self.log_capacity, flushLevel=logging.ERROR, target=file_handler,
            )
            self._log_handler.addFilter(self._is_own_record)
            self.chain_logger.addHandler(self._log_handler)
            self.chain_logger.setLevel(logging.INFO)
            self.chain_logger.propagate = False
        except OSError:
            self.close()
            raise
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def _is_own_record(self, record) -> bool:
        return getattr(record, 'run_id', None) == self.run_id

    def log(self, message: str) -> None:
        """Add one line to this run's chain log."""
        self.chain_logger.info(message, extra={'run_id': self.run_id})

    def close(self) -> None:
        """Close every open handle; safe to call more than once."""
        for handle in self._handles.values():
            handle.close()
        self._handles.clear()
        if self._log_handler is not None:
            self.chain_logger.removeHandler(self._log_handler)
            target = self._log_handler.target
            self._log_handler.close()
            if target is not None:
                target.close()
            self._log_handler = None

    def write_states(self, states) -> None:
        """
        Write a batch of snapshots, one generation per line in every file.

        Buffered chain log lines are written out with the batch.

        Raises:
            OSError: Re-raised after logging; the run cannot continue safely
        """
        if not states:
            return

        loglik = np.array([[float(s.log_lik)] for s in states])
        root = np.stack([np.asarray(s.root) for s in states])
        covs = np.stack([np.asarray(s.covariances) for s in states])  # (n, p, k, k)
        n = covs.shape[0]

        try:
            np.savetxt(self._handles['loglik'], loglik, fmt=FLOAT_FORMAT, delimiter=DELIMITER)
            np.savetxt(self._handles['root'], root, fmt=FLOAT_FORMAT, delimiter=DELIMITER)
            for i in range(covs.shape[1]):
                rows = covs[:, i].reshape(n, -1)
                np.savetxt(self._handles[f'matrix_{i}'], rows, fmt=FLOAT_FORMAT, delimiter=DELIMITER)
            for handle in self._handles.values():
                handle.flush()
        except OSError as e:
            logger.error(f"Failed to write chain chunk for run {self.run_id} "
                         f"after {self.lines_written} generations: {e}")
            raise

        if self._log_handler is not None:
            self._log_handler.flush()
        self.lines_written += n


def _read_rows(path) -> np.ndarray:
    """Parse a chain file into a (n_lines, n_values) float array."""
    with open(path) as handle:
        rows = [[float(x) for x in line.split(DELIMITER.strip())]
                for line in handle if line.strip()]
    return np.array(rows, dtype=np.float64).reshape(len(rows), -1)


def load_chain(descriptor, burn: float = 0.0) -> Dict[str, Any]:
    """
    Read the chain files of a finished run.

    Args:
        descriptor: RunDescriptor returned by the sampler
        burn: Fraction of the leading generations to drop (0 <= burn < 1)

    Returns:
        Dict with:
            - loglik: (n,) log-likelihoods
            - root: (n, k) root vectors
            - matrices: list of (n, k, k) arrays, one per regime
            - tree_index: (n,) active tree per generation, or None
            - generations: (n,) 1-based generation numbers kept
    """
    if not 0.0 <= burn < 1.0:
        raise ValueError(f"burn must be in [0, 1), got {burn}")

    paths = descriptor.files
    for path in [paths['loglik'], paths['root'], *paths['matrices']]:
        if not Path(path).exists():
            raise FileNotFoundError(f"Chain file not found: {path}")

    k = descriptor.n_traits
    loglik = _read_rows(paths['loglik'])[:, 0]
    root = _read_rows(paths['root'])
    matrices = [_read_rows(p).reshape(-1, k, k) for p in paths['matrices']]

    n = loglik.shape[0]
    start = int(np.floor(burn * n))
    tree_index = descriptor.tree_index
    if tree_index is not None:
        tree_index = np.asarray(tree_index)[start:n]

    return {
        'loglik': loglik[start:],
        'root': root[start:],
        'matrices': [m[start:] for m in matrices],
        'tree_index': tree_index,
        'generations': np.arange(start + 1, n + 1),
    }
