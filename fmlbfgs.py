"""fmlbfgs — distributed Factorization Machine training with L-BFGS.

Trains the pairwise-interaction part of a Factorization Machine::

    margin(x) = base_margin + sum_l 0.5 * ((sum_j x_j v_jl)^2 - sum_j x_j^2 v_jl^2)

over sparse libsvm rows. Every worker owns a contiguous shard of the rows; the
objective function evaluates loss and gradient over its own shard only and the
optimizer sums the per-worker results, so the L2 penalty is added by the lead
worker (rank 0) alone.

- O(k * L) margin and gradient per row (no loop over feature pairs)
- Thread-parallel passes over each batch with private gradient accumulators
- Squared and logistic loss
- Binary model format: ``b"binf"`` + raw ModelParam struct + float32 weights

::

    obj = FmObjFunction()
    for name, val in [("data", "train.libsvm"), ("nfactor", "8")]:
        obj.set_param(name, val)
    obj.run()                                 # task=train by default

    # several simulated workers in one process
    launch(4, lambda ctx: FmObjFunction(ctx, dtrain=...).solver.run())

Command line::

    fmlbfgs train data=train.libsvm val_data=val.libsvm nfactor=8 reg_L2_V=0.1
    fmlbfgs pred data=test.libsvm model_in=final.model name_pred=pred.txt
    fmlbfgs dump model_in=final.model name_dump=dump.txt

Requires only **numpy** and **numba**.
"""

from __future__ import annotations

import argparse
import os
import sys
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import BinaryIO, Callable

import numpy as np
from numba import njit


MODEL_TAG = b"binf"

LOSS_SQUARED = 0
LOSS_LOGISTIC = 1
LOSS_NAMES = {"squared": LOSS_SQUARED, "linear": LOSS_SQUARED,
              "logistic": LOSS_LOGISTIC}


# ── errors ───────────────────────────────────────────────────────────────────


class FmError(Exception):
    """Base class for fatal training errors."""


class ConfigError(FmError):
    """Misconfigured run: bad parameter value, unknown task, missing file."""


class DataFormatError(FmError):
    """Malformed line in a libsvm data file."""


class ModelFormatError(FmError):
    """Unrecognised model tag or truncated model / checkpoint file."""


class DimensionMismatchError(FmError):
    """Weight buffer length disagrees with the negotiated num_weight."""


class NumericalError(FmError):
    """Objective became non-finite."""


def _tracker_print(msg: str):
    print(msg, file=sys.stderr, flush=True)


def _parse_int(name, val):
    try:
        return int(val)
    except ValueError:
        raise ConfigError(f"invalid integer for {name}: {val!r}") from None


def _parse_float(name, val):
    try:
        return float(val)
    except ValueError:
        raise ConfigError(f"invalid number for {name}: {val!r}") from None


def _read_exact(fi: BinaryIO, nbytes: int, what: str) -> bytes:
    buf = fi.read(nbytes)
    if len(buf) != nbytes:
        raise ModelFormatError(
            f"truncated {what}: expected {nbytes} bytes, got {len(buf)}")
    return buf


# ── sparse rows ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Row:
    """One sparse instance: parallel index/value arrays plus label and weight."""
    index: np.ndarray
    value: np.ndarray
    label: float = 0.0
    weight: float = 1.0

    def __post_init__(self):
        object.__setattr__(self, "index",
                           np.ascontiguousarray(self.index, dtype=np.uint32))
        object.__setattr__(self, "value",
                           np.ascontiguousarray(self.value, dtype=np.float32))
        if self.index.shape != self.value.shape:
            raise ValueError("index and value must have the same length")

    def __len__(self) -> int:
        return len(self.index)


@dataclass
class RowBlock:
    """CSR batch of rows.

    Row ``i`` owns ``index[offset[i]:offset[i+1]]``; ``offset`` need not start
    at zero so that :meth:`slice` can share the index/value arrays.
    """
    offset: np.ndarray
    index: np.ndarray
    value: np.ndarray
    label: np.ndarray
    weight: np.ndarray

    def __len__(self) -> int:
        return len(self.label)

    def __getitem__(self, i: int) -> Row:
        s, e = int(self.offset[i]), int(self.offset[i + 1])
        return Row(self.index[s:e], self.value[s:e],
                   float(self.label[i]), float(self.weight[i]))

    def slice(self, lo: int, hi: int) -> RowBlock:
        return RowBlock(self.offset[lo:hi + 1], self.index, self.value,
                        self.label[lo:hi], self.weight[lo:hi])

    def num_col(self) -> int:
        """Max feature index + 1 (0 for a block without features)."""
        s, e = int(self.offset[0]), int(self.offset[-1])
        if e <= s:
            return 0
        return int(self.index[s:e].max()) + 1

    @classmethod
    def from_rows(cls, rows) -> RowBlock:
        rows = list(rows)
        lengths = np.array([len(r) for r in rows], dtype=np.int64)
        offset = np.zeros(len(rows) + 1, dtype=np.int64)
        np.cumsum(lengths, out=offset[1:])
        if rows:
            index = np.concatenate([r.index for r in rows]).astype(np.uint32)
            value = np.concatenate([r.value for r in rows]).astype(np.float32)
        else:
            index = np.empty(0, np.uint32)
            value = np.empty(0, np.float32)
        return cls(offset=offset, index=index, value=value,
                   label=np.array([r.label for r in rows], dtype=np.float32),
                   weight=np.array([r.weight for r in rows], dtype=np.float32))


_MAX_INDEX = int(np.iinfo(np.uint32).max)


def load_libsvm(path: str, part_index: int = 0, num_parts: int = 1) -> RowBlock:
    """Read ``label[:weight] idx[:val] ...`` lines, keeping one contiguous part.

    Blank lines and ``#`` comments are skipped; a feature without ``:val`` has
    value 1.0.
    """
    with open(path, encoding="utf-8") as f:
        lines = [(lineno, text) for lineno, text in
                 ((n, line.split("#", 1)[0].strip())
                  for n, line in enumerate(f, 1)) if text]
    n = len(lines)
    lo, hi = n * part_index // num_parts, n * (part_index + 1) // num_parts

    offset, index, value, label, weight = [0], [], [], [], []
    for lineno, text in lines[lo:hi]:
        tokens = text.split()
        try:
            head = tokens[0].split(":")
            label.append(float(head[0]))
            weight.append(float(head[1]) if len(head) > 1 else 1.0)
            for tok in tokens[1:]:
                k, sep, v = tok.partition(":")
                col = int(k)
                if col < 0:
                    raise ValueError(f"negative feature index {col}")
                if col > _MAX_INDEX:
                    raise ValueError(f"feature index {col} exceeds {_MAX_INDEX}")
                index.append(col)
                value.append(float(v) if sep else 1.0)
        except ValueError as e:
            raise DataFormatError(f"{path}:{lineno}: {e}") from None
        offset.append(len(index))

    return RowBlock(offset=np.array(offset, dtype=np.int64),
                    index=np.array(index, dtype=np.uint32),
                    value=np.array(value, dtype=np.float32),
                    label=np.array(label, dtype=np.float32),
                    weight=np.array(weight, dtype=np.float32))


class RowBlockIter:
    """Resettable batch iterator over one worker's shard."""

    def __init__(self, block: RowBlock, batch_size: int = 65536):
        if batch_size <= 0:
            raise ConfigError(f"batch_size must be positive, got {batch_size}")
        self.block = block
        self.batch_size = batch_size
        self._pos = 0
        self._cur = None

    @classmethod
    def create(cls, path: str, rank: int = 0, world_size: int = 1,
               batch_size: int = 65536) -> RowBlockIter:
        return cls(load_libsvm(path, rank, world_size), batch_size)

    def reset(self):
        self._pos = 0
        self._cur = None

    def advance(self) -> bool:
        n = len(self.block)
        if self._pos >= n:
            self._cur = None
            return False
        hi = min(self._pos + self.batch_size, n)
        self._cur = self.block.slice(self._pos, hi)
        self._pos = hi
        return True

    def value(self) -> RowBlock:
        return self._cur

    def num_col(self) -> int:
        return self.block.num_col()

    def num_rows(self) -> int:
        return len(self.block)


# ── margin / loss / gradient kernels ─────────────────────────────────────────
#
# All kernels index weight[col * nfactor + f]. Columns at or beyond
# len(weight) // nfactor (only possible for validation / prediction data)
# are skipped.


@njit(cache=True, nogil=True)
def margin_to_loss(loss_type, label, margin):
    if loss_type == LOSS_LOGISTIC:
        # -(y log p + (1 - y) log(1 - p)),  p = sigmoid(margin)
        if margin > 0.0:
            return np.log1p(np.exp(-margin)) + (1.0 - label) * margin
        return np.log1p(np.exp(margin)) - label * margin
    diff = margin - label
    return 0.5 * diff * diff


@njit(cache=True, nogil=True)
def margin_to_grad(loss_type, label, margin):
    """d loss / d margin."""
    if loss_type == LOSS_LOGISTIC:
        if margin >= 0.0:
            p = 1.0 / (1.0 + np.exp(-margin))
        else:
            e = np.exp(margin)
            p = e / (1.0 + e)
        return p - label
    return margin - label


@njit(cache=True, nogil=True)
def _predict_margin(weight, index, value, start, end, nfactor, base_margin):
    nfeat = weight.shape[0] // nfactor
    margin = base_margin
    for f in range(nfactor):
        sumxf = 0.0
        sumsqr = 0.0
        for j in range(start, end):
            col = np.int64(index[j])
            if col < nfeat:
                t = weight[col * nfactor + f] * value[j]
                sumxf += t
                sumsqr += t * t
        margin += 0.5 * (sumxf * sumxf - sumsqr)
    return margin


@njit(cache=True, nogil=True)
def _accumulate_row_grad(out, weight, index, value, start, end, nfactor, grad):
    """out[j*k + l] += x_j * (sum_j' x_j' v_j'l - x_j v_jl) * grad."""
    nfeat = weight.shape[0] // nfactor
    for f in range(nfactor):
        sumxf = 0.0
        for j in range(start, end):
            col = np.int64(index[j])
            if col < nfeat:
                sumxf += weight[col * nfactor + f] * value[j]
        for j in range(start, end):
            col = np.int64(index[j])
            if col < nfeat:
                n = col * nfactor + f
                x = value[j]
                out[n] += x * (sumxf - weight[n] * x) * grad


@njit(cache=True, nogil=True)
def _eval_rows(weight, offset, index, value, label, row_weight, lo, hi,
               nfactor, base_margin, loss_type):
    sum_val = 0.0
    for i in range(lo, hi):
        py = _predict_margin(weight, index, value, offset[i], offset[i + 1],
                             nfactor, base_margin)
        sum_val += margin_to_loss(loss_type, label[i], py) * row_weight[i]
    return sum_val


@njit(cache=True, nogil=True)
def _grad_rows(out, weight, offset, index, value, label, row_weight, lo, hi,
               nfactor, base_margin, loss_type):
    for i in range(lo, hi):
        s, e = offset[i], offset[i + 1]
        py = _predict_margin(weight, index, value, s, e, nfactor, base_margin)
        grad = margin_to_grad(loss_type, label[i], py) * row_weight[i]
        _accumulate_row_grad(out, weight, index, value, s, e, nfactor, grad)


@njit(cache=True, nogil=True)
def _predict_rows(out, weight, offset, index, value, nfactor, base_margin):
    for i in range(out.shape[0]):
        out[i] = _predict_margin(weight, index, value, offset[i],
                                 offset[i + 1], nfactor, base_margin)


def predict_margin(weight: np.ndarray, row: Row, nfactor: int,
                   base_margin: float = 0.0) -> float:
    """Margin of one row; O(nfactor * len(row))."""
    return float(_predict_margin(weight, row.index, row.value, 0, len(row),
                                 nfactor, base_margin))


def row_gradient(weight: np.ndarray, row: Row, nfactor: int, grad: float,
                 out: np.ndarray | None = None) -> np.ndarray:
    """Add one row's interaction-weight gradient, scaled by *grad*, into *out*.

    *grad* is d loss / d margin times the instance weight.
    """
    if out is None:
        out = np.zeros(weight.shape[0], dtype=np.float64)
    _accumulate_row_grad(out, weight, row.index, row.value, 0, len(row),
                         nfactor, grad)
    return out


def _static_chunks(n, nparts):
    """Contiguous [lo, hi) ranges, one per thread (empty ranges dropped)."""
    nparts = max(1, min(nparts, n))
    bounds = [n * t // nparts for t in range(nparts + 1)]
    return [(bounds[t], bounds[t + 1]) for t in range(nparts)]


# ── model ────────────────────────────────────────────────────────────────────


# Raw struct layout written after MODEL_TAG and in checkpoints.
_PARAM_DTYPE = np.dtype([
    ("base_score", np.float32),
    ("num_feature", np.uint64),
    ("num_weight", np.uint64),
    ("nfactor", np.int32),
    ("loss_type", np.int32),
    ("num_size", np.uint64),
    ("num_size_val", np.uint64),
    ("reg_L2_V", np.float32),
    ("reserved", np.int32, (15,)),
], align=True)


@dataclass
class ModelParam:
    """Hyperparameters and negotiated sizes.

    ``reg_L2_V`` penalises the whole weight vector; the model has no linear
    or bias weights, so that is exactly the set of interaction factors.
    """
    num_feature: int = 0
    nfactor: int = 8
    base_score: float = 0.5
    loss_type: int = LOSS_LOGISTIC
    reg_L2_V: float = 0.0
    num_size: int = 0
    num_size_val: int = 0

    def __post_init__(self):
        # float32 storage so the struct round-trips exactly
        self.base_score = float(np.float32(self.base_score))
        self.reg_L2_V = float(np.float32(self.reg_L2_V))

    @property
    def num_weight(self) -> int:
        return self.num_feature * self.nfactor

    @property
    def base_margin(self) -> float:
        """Bias prior in margin space, derived from base_score."""
        if self.loss_type == LOSS_LOGISTIC:
            if not 0.0 < self.base_score < 1.0:
                raise ConfigError(
                    "base_score must be in (0, 1) for logistic loss, "
                    f"got {self.base_score}")
            return float(-np.log(1.0 / self.base_score - 1.0))
        return self.base_score

    def set_param(self, name: str, val: str):
        if name == "num_feature":
            self.num_feature = _parse_int(name, val)
        elif name == "nfactor":
            nfactor = _parse_int(name, val)
            if nfactor < 1:
                raise ConfigError(f"nfactor must be >= 1, got {nfactor}")
            self.nfactor = nfactor
        elif name == "base_score":
            self.base_score = float(np.float32(_parse_float(name, val)))
        elif name == "loss_type":
            loss = LOSS_NAMES.get(val)
            if loss is None:
                loss = _parse_int(name, val)
            if loss not in (LOSS_SQUARED, LOSS_LOGISTIC):
                raise ConfigError(f"unknown loss_type: {val!r}")
            self.loss_type = loss
        elif name == "reg_L2_V":
            self.reg_L2_V = float(np.float32(_parse_float(name, val)))

    def to_bytes(self) -> bytes:
        rec = np.zeros((), dtype=_PARAM_DTYPE)
        rec["base_score"] = self.base_score
        rec["num_feature"] = self.num_feature
        rec["num_weight"] = self.num_weight
        rec["nfactor"] = self.nfactor
        rec["loss_type"] = self.loss_type
        rec["num_size"] = self.num_size
        rec["num_size_val"] = self.num_size_val
        rec["reg_L2_V"] = self.reg_L2_V
        return rec.tobytes()

    @classmethod
    def from_bytes(cls, buf: bytes) -> ModelParam:
        rec = np.frombuffer(buf, dtype=_PARAM_DTYPE, count=1)[0]
        param = cls(num_feature=int(rec["num_feature"]),
                    nfactor=int(rec["nfactor"]),
                    base_score=float(rec["base_score"]),
                    loss_type=int(rec["loss_type"]),
                    reg_L2_V=float(rec["reg_L2_V"]),
                    num_size=int(rec["num_size"]),
                    num_size_val=int(rec["num_size_val"]))
        if param.nfactor < 1 or int(rec["num_weight"]) != param.num_weight:
            raise ModelFormatError(
                f"inconsistent model header: num_feature={param.num_feature} "
                f"nfactor={param.nfactor} num_weight={int(rec['num_weight'])}")
        return param

    @staticmethod
    def nbytes() -> int:
        return _PARAM_DTYPE.itemsize


class FmModel:
    """Parameters plus an owned weight buffer (for load / predict / dump)."""

    def __init__(self, param: ModelParam | None = None,
                 weight: np.ndarray | None = None):
        self.param = param if param is not None else ModelParam()
        self.weight = weight

    def save(self, fo: BinaryIO, weight: np.ndarray | None = None):
        if weight is None:
            weight = self.weight
        nw = self.param.num_weight
        if weight is None or weight.shape[0] < nw:
            raise DimensionMismatchError(
                f"cannot save {nw} weights from a buffer of "
                f"{0 if weight is None else weight.shape[0]}")
        fo.write(MODEL_TAG)
        fo.write(self.param.to_bytes())
        fo.write(np.ascontiguousarray(weight[:nw], dtype=np.float32).tobytes())

    def load(self, fi: BinaryIO):
        tag = fi.read(len(MODEL_TAG))
        if tag != MODEL_TAG:
            raise ModelFormatError(f"invalid model file tag: {tag!r}")
        param = ModelParam.from_bytes(
            _read_exact(fi, ModelParam.nbytes(), "model header"))
        payload = _read_exact(fi, 4 * param.num_weight, "model weights")
        self.param = param
        self.weight = np.frombuffer(payload, dtype=np.float32).copy()

    def predict(self, row: Row) -> float:
        return predict_margin(self.weight, row, self.param.nfactor,
                              self.param.base_margin)

    def predict_block(self, block: RowBlock) -> np.ndarray:
        out = np.empty(len(block), dtype=np.float64)
        _predict_rows(out, self.weight, block.offset, block.index,
                      block.value, self.param.nfactor, self.param.base_margin)
        return out

    def dump(self, fo):
        """Write ``feature_index<TAB>v_0 ... v_{k-1}`` per feature."""
        k = self.param.nfactor
        factors = self.weight[:self.param.num_weight].reshape(-1, k)
        for i, v in enumerate(factors):
            fo.write(f"{i}\t" + "\t".join(f"{x:g}" for x in v) + "\n")


# ── collectives ──────────────────────────────────────────────────────────────


class LocalComm:
    """Collectives for a single worker: every operation is the identity."""

    rank = 0
    world_size = 1

    def reduce_sum(self, value):
        return value

    def reduce_max(self, value):
        return value

    def broadcast(self, value, root: int = 0):
        return value


class ThreadGroup:
    """Shared state of a set of in-process workers (one thread each)."""

    def __init__(self, world_size: int):
        if world_size < 1:
            raise ConfigError(f"world_size must be >= 1, got {world_size}")
        self.world_size = world_size
        self._barrier = threading.Barrier(world_size)
        self._slots = [None] * world_size

    def comm(self, rank: int) -> ThreadComm:
        return ThreadComm(self, rank)

    def abort(self):
        self._barrier.abort()

    def exchange(self, rank, value, combine):
        """Publish *value*, then return combine(all values).

        combine runs while every worker is held between the two barriers, so
        no worker can touch its published buffer until all have read it.
        """
        self._slots[rank] = value
        self._barrier.wait()
        result = combine(list(self._slots))
        self._barrier.wait()
        return result


class ThreadComm:
    """Blocking collectives over a :class:`ThreadGroup`.

    Every worker must make the same sequence of calls. Reductions fold in rank
    order, so all workers get bit-identical results.
    """

    def __init__(self, group: ThreadGroup, rank: int):
        self.group = group
        self.rank = rank
        self.world_size = group.world_size

    def _fold(self, value, op):
        def combine(values):
            total = values[0]
            for v in values[1:]:
                total = op(total, v)
            if isinstance(total, np.ndarray) and total is values[0]:
                total = total.copy()
            return total
        return self.group.exchange(self.rank, value, combine)

    def reduce_sum(self, value):
        if isinstance(value, np.ndarray):
            return self._fold(value, np.add)
        return self._fold(value, lambda a, b: a + b)

    def reduce_max(self, value):
        if isinstance(value, np.ndarray):
            return self._fold(value, np.maximum)
        return self._fold(value, max)

    def broadcast(self, value, root: int = 0):
        def combine(values):
            src = values[root]
            if self.rank == root:
                return value
            if isinstance(value, np.ndarray):
                value[...] = src
                return value
            return src.copy() if isinstance(src, np.ndarray) else src
        return self.group.exchange(
            self.rank, value if self.rank == root else None, combine)


@dataclass(frozen=True)
class WorkerContext:
    """Identity of one worker and its collective engine."""
    rank: int
    world_size: int
    comm: object = field(default_factory=LocalComm, compare=False)

    @classmethod
    def single(cls) -> WorkerContext:
        return cls(0, 1, LocalComm())


def launch(world_size: int, target: Callable[[WorkerContext], object]) -> list:
    """Run *target* on ``world_size`` simulated workers; results in rank order.

    If any worker fails the group barrier is aborted so the others stop at
    their next collective, and the first real error is re-raised.
    """
    group = ThreadGroup(world_size)

    def _worker(rank):
        try:
            return target(WorkerContext(rank, world_size, group.comm(rank)))
        except BaseException:
            group.abort()
            raise

    results, errors = [], []
    with ThreadPoolExecutor(max_workers=world_size,
                            thread_name_prefix="fm-worker") as pool:
        futures = [pool.submit(_worker, r) for r in range(world_size)]
        for fut in futures:
            try:
                results.append(fut.result())
            except Exception as e:
                errors.append(e)
    if errors:
        raise next((e for e in errors
                    if not isinstance(e, threading.BrokenBarrierError)),
                   errors[0])
    return results


# ── L-BFGS driver ────────────────────────────────────────────────────────────


class LBFGSSolver:
    """Limited-memory BFGS over the per-worker objective.

    Function values and gradients of every worker are summed with
    ``reduce_sum``; all workers then take identical steps.
    """

    def __init__(self, obj: FmObjFunction, ctx: WorkerContext):
        self.obj = obj
        self.ctx = ctx
        self.max_lbfgs_iter = 500
        self.min_lbfgs_iter = 5
        self.lbfgs_stop_tol = 1e-5
        self.size_memory = 10
        self.linesearch_c1 = 1e-4
        self.linesearch_backoff = 0.5
        self.max_linesearch_iter = 100
        self.save_period = 0
        self.checkpoint = None
        self.verbose = 1
        self.num_iteration = 0

    def set_param(self, name: str, val: str):
        if name in ("max_lbfgs_iter", "min_lbfgs_iter", "size_memory",
                    "max_linesearch_iter", "save_period", "verbose"):
            setattr(self, name, _parse_int(name, val))
        elif name in ("lbfgs_stop_tol", "linesearch_c1", "linesearch_backoff"):
            setattr(self, name, _parse_float(name, val))
        elif name == "checkpoint":
            self.checkpoint = None if val == "NULL" else val

    # ── global objective ──

    def _eval(self, weight, validation=False):
        return self.ctx.comm.reduce_sum(
            float(self.obj.eval(weight, validation)))

    def _grad(self, weight):
        grad = np.empty(weight.shape[0], dtype=np.float32)
        self.obj.calc_grad(grad, weight)
        return self.ctx.comm.reduce_sum(grad.astype(np.float64))

    @staticmethod
    def _direction(grad, history):
        """Two-loop recursion: -H * grad."""
        q = grad.copy()
        alphas = []
        for s, y, rho in reversed(history):
            a = rho * float(s @ q)
            q -= a * y
            alphas.append(a)
        if history:
            s, y, _ = history[-1]
            q *= float(s @ y) / float(y @ y)
        for (s, y, rho), a in zip(history, reversed(alphas)):
            b = rho * float(y @ q)
            q += (a - b) * s
        return -q

    # ── checkpoints ──

    def _save_checkpoint(self, weight, iteration):
        tmp = self.checkpoint + ".tmp"
        with open(tmp, "wb") as fo:
            self.obj.save(fo)
            fo.write(np.int64(iteration).tobytes())
            fo.write(np.ascontiguousarray(weight, dtype=np.float32).tobytes())
        os.replace(tmp, self.checkpoint)

    def _load_checkpoint(self):
        if self.checkpoint is None or not os.path.exists(self.checkpoint):
            return None
        with open(self.checkpoint, "rb") as fi:
            self.obj.load(fi)
            iteration = int(np.frombuffer(
                _read_exact(fi, 8, "checkpoint iteration"), dtype=np.int64)[0])
            nw = self.obj.model.param.num_weight
            weight = np.frombuffer(
                _read_exact(fi, 4 * nw, "checkpoint weights"),
                dtype=np.float32).copy()
        return weight, iteration

    # ── main loop ──

    def run(self) -> np.ndarray:
        rank = self.ctx.rank
        restored = self._load_checkpoint()
        if restored is not None:
            weight, start = restored
            if self.verbose > 0 and rank == 0:
                _tracker_print(f"[LBFGS] resume from {self.checkpoint} "
                               f"at iteration {start}")
        else:
            dim, _ = self.obj.init_num_dim()
            weight = np.zeros(dim, dtype=np.float32)
            self.obj.init_model(weight)
            start = 0
        self.num_iteration = start

        fval = self._eval(weight)
        grad = self._grad(weight)
        history = deque(maxlen=self.size_memory)
        t0 = time.time()

        for it in range(start, self.max_lbfgs_iter):
            d = self._direction(grad, history)
            gd = float(grad @ d)
            if gd >= 0.0:
                history.clear()
                d = -grad
                gd = -float(grad @ grad)
            if gd == 0.0:
                break
            step = 1.0 if history else 1.0 / np.sqrt(-gd)

            for _ in range(self.max_linesearch_iter):
                new_weight = (weight + step * d).astype(np.float32)
                new_fval = self._eval(new_weight)
                if new_fval <= fval + self.linesearch_c1 * step * gd:
                    break
                step *= self.linesearch_backoff
            else:
                if self.verbose > 0 and rank == 0:
                    _tracker_print(f"[LBFGS] line search failed at "
                                   f"iteration {it + 1}, stop")
                break

            new_grad = self._grad(new_weight)
            s = new_weight.astype(np.float64) - weight
            y = new_grad - grad
            sy = float(s @ y)
            if sy > 1e-10:
                history.append((s, y, 1.0 / sy))
            rel = (fval - new_fval) / max(abs(fval), 1e-10)
            weight, fval, grad = new_weight, new_fval, new_grad
            self.num_iteration = it + 1

            if self.verbose > 0 and rank == 0:
                _tracker_print(f"[LBFGS] iter {it + 1}: objective={fval:.6g} "
                               f"step={step:.4g}  ({time.time() - t0:.1f}s)")
            if self.obj.dval is not None:
                val_loss = self._eval(weight, validation=True)
                if self.verbose > 0 and rank == 0:
                    _tracker_print(f"[LBFGS] iter {it + 1}: "
                                   f"validation={val_loss:.6g}")
            if rank == 0:
                if self.checkpoint is not None:
                    self._save_checkpoint(weight, it + 1)
                if self.save_period > 0 and (it + 1) % self.save_period == 0:
                    self.obj.save_model_weight(weight, it + 1)
            if it + 1 >= self.min_lbfgs_iter and rel < self.lbfgs_stop_tol:
                break

        if self.verbose > 0 and rank == 0:
            _tracker_print(f"[LBFGS] finished after {self.num_iteration} "
                           f"iterations, objective={fval:.6g}")
        return weight


# ── objective function ───────────────────────────────────────────────────────


class FmObjFunction:
    """FM objective over one worker's shard, driven by :class:`LBFGSSolver`.

    Call order: ``init_num_dim`` -> ``init_model`` -> any number of
    ``eval`` / ``calc_grad``. The weight buffer passed in belongs to the
    optimizer and is only read during a pass.
    """

    def __init__(self, ctx: WorkerContext | None = None, *,
                 dtrain: RowBlockIter | None = None,
                 dval: RowBlockIter | None = None):
        self.ctx = ctx if ctx is not None else WorkerContext.single()
        self.model = FmModel()
        self.dtrain = dtrain
        self.dval = dval
        self.nthread = 1
        self.fm_random = 0.01
        self.seed = 0
        self.batch_size = 65536
        self.verbose = 1
        self.task = "train"
        self.data = None
        self.val_data = None
        self.model_in = None
        self.model_out = "final.model"
        self.name_pred = "pred.txt"
        self.name_dump = "dump.txt"
        self.name_weight = None
        # reg_L2_V given on the command line outlives a loaded model header
        self.reg_L2_V = None
        self.solver = LBFGSSolver(self, self.ctx)
        self._acc = None
        self._pool = None

    @property
    def comm(self):
        return self.ctx.comm

    def set_param(self, name: str, val: str):
        self.model.param.set_param(name, val)
        self.solver.set_param(name, val)
        if name == "nthread":
            self.nthread = _parse_int(name, val)
        elif name == "fm_random":
            self.fm_random = _parse_float(name, val)
        elif name == "seed":
            self.seed = _parse_int(name, val)
        elif name == "batch_size":
            self.batch_size = _parse_int(name, val)
        elif name == "verbose":
            self.verbose = _parse_int(name, val)
        elif name == "reg_L2_V":
            self.reg_L2_V = self.model.param.reg_L2_V
        elif name in ("task", "model_out", "name_pred", "name_dump"):
            setattr(self, name, val)
        elif name in ("data", "val_data", "model_in", "name_weight"):
            setattr(self, name, None if val == "NULL" else val)

    # ── threads ──

    def _num_threads(self):
        return self.nthread if self.nthread > 0 else (os.cpu_count() or 1)

    def _parallel(self, fn, n):
        """Run fn(t, lo, hi) for each static row chunk t; results in order."""
        chunks = _static_chunks(n, self._num_threads())
        if len(chunks) == 1:
            return [fn(0, *chunks[0])]
        if self._pool is None:
            self._pool = ThreadPoolExecutor(
                max_workers=self._num_threads(),
                thread_name_prefix=f"fm-rank{self.ctx.rank}")
        futures = [self._pool.submit(fn, t, lo, hi)
                   for t, (lo, hi) in enumerate(chunks)]
        return [f.result() for f in futures]

    def _alloc_workspace(self):
        nw = self.model.param.num_weight
        self._acc = np.zeros((self._num_threads(), nw), dtype=np.float32)

    def close(self):
        if self._pool is not None:
            self._pool.shutdown()
            self._pool = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # ── optimizer contract ──

    def _check_size(self, buf, what="weight"):
        nw = self.model.param.num_weight
        if buf.shape[0] != nw:
            raise DimensionMismatchError(
                f"{what} buffer has {buf.shape[0]} entries, expected {nw}")

    @property
    def _pretrained(self):
        return self.model.weight is not None

    def init_num_dim(self) -> tuple[int, int]:
        """Negotiate num_feature and global row counts; returns (dim, size)."""
        param = self.model.param
        rank = self.ctx.rank
        if not self._pretrained:
            if self.dtrain is None:
                raise ConfigError("no training data: set data")
            ndim = self.dtrain.num_col()
            nsize = self.dtrain.num_rows()
            if self.verbose > 0:
                _tracker_print(f"[InitNumDim@fmlbfgs] @node[{rank}] "
                               f"train sample num: {nsize}")
            ndim = self.comm.reduce_max(ndim)
            nsize = self.comm.reduce_sum(nsize)
            param.num_feature = max(ndim, param.num_feature)
            param.num_size = nsize
            if self.verbose > 0 and rank == 0:
                _tracker_print(f"[InitNumDim@fmlbfgs] single feature num max: "
                               f"{param.num_feature}")
                _tracker_print(f"[InitNumDim@fmlbfgs] train sample num total: "
                               f"{param.num_size}")
        if self.dval is not None:
            # columns past num_feature in the validation data are ignored
            param.num_size_val = self.comm.reduce_sum(self.dval.num_rows())
            if self.verbose > 0 and rank == 0:
                _tracker_print(f"[InitNumDim@fmlbfgs] validation sample "
                               f"num total: {param.num_size_val}")
        self._alloc_workspace()
        return param.num_weight, param.num_size

    def init_model(self, weight: np.ndarray):
        """Fill the optimizer's buffer identically on every worker."""
        self._check_size(weight)
        if not self._pretrained:
            if self.ctx.rank == 0:
                rng = np.random.RandomState(self.seed)
                weight[:] = rng.normal(0.0, 1.0, weight.shape[0]) * self.fm_random
            self.comm.broadcast(weight, 0)
        else:
            self.comm.broadcast(self.model.weight, 0)
            weight[:] = self.model.weight

    def eval(self, weight: np.ndarray, validation: bool = False) -> float:
        """This worker's share of the objective."""
        self._check_size(weight)
        param = self.model.param
        it = self.dval if validation else self.dtrain
        if it is None:
            raise ConfigError("validation requested but no val_data"
                              if validation else "no training data: set data")
        base_margin = param.base_margin
        sum_val = 0.0
        it.reset()
        while it.advance():
            b = it.value()
            parts = self._parallel(
                lambda t, lo, hi: _eval_rows(
                    weight, b.offset, b.index, b.value, b.label, b.weight,
                    lo, hi, param.nfactor, base_margin, param.loss_type),
                len(b))
            sum_val += sum(parts)

        if validation:
            if param.num_size_val == 0:
                raise ConfigError("validation sample count is zero")
            sum_val /= param.num_size_val
        elif self.ctx.rank == 0 and param.reg_L2_V != 0.0:
            # only the lead worker adds the penalty
            w = weight.astype(np.float64)
            sum_val += 0.5 * param.reg_L2_V * float(w @ w)
        if not np.isfinite(sum_val):
            raise NumericalError(f"non-finite objective: {sum_val}")
        return sum_val

    def calc_grad(self, out_grad: np.ndarray, weight: np.ndarray) -> np.ndarray:
        """Write this worker's gradient share into *out_grad*."""
        self._check_size(weight)
        self._check_size(out_grad, "gradient")
        if self.dtrain is None:
            raise ConfigError("no training data: set data")
        param = self.model.param
        if self._acc is None or self._acc.shape != (self._num_threads(),
                                                    param.num_weight):
            self._alloc_workspace()
        acc = self._acc
        base_margin = param.base_margin
        out_grad[:] = 0.0

        it = self.dtrain
        it.reset()
        while it.advance():
            b = it.value()
            used = len(self._parallel(
                lambda t, lo, hi: _grad_rows(
                    acc[t], weight, b.offset, b.index, b.value, b.label,
                    b.weight, lo, hi, param.nfactor, base_margin,
                    param.loss_type),
                len(b)))
            # merge on this thread only, then re-zero for the next batch
            for t in range(used):
                out_grad += acc[t]
                acc[t].fill(0.0)

        if self.ctx.rank == 0 and param.reg_L2_V != 0.0:
            out_grad += param.reg_L2_V * weight
        return out_grad

    def save(self, fo: BinaryIO):
        """Checkpoint: ModelParam only."""
        fo.write(self.model.param.to_bytes())

    def load(self, fi: BinaryIO):
        self.model.param = ModelParam.from_bytes(
            _read_exact(fi, ModelParam.nbytes(), "checkpoint header"))
        self._apply_configured()
        self._alloc_workspace()

    # ── model files ──

    def load_model(self, path: str):
        with open(path, "rb") as fi:
            self.model.load(fi)
        self._apply_configured()

    def _apply_configured(self):
        if self.reg_L2_V is not None:
            self.model.param.reg_L2_V = self.reg_L2_V

    def save_model(self, path: str, weight: np.ndarray):
        with open(path, "wb") as fo:
            self.model.save(fo, weight)

    def save_model_weight(self, weight: np.ndarray, num_iteration: int = 0):
        """Readable ``index<TAB>weight`` file; versioned when num_iteration > 0."""
        base = self.name_weight or self.model_out
        path = base if num_iteration == 0 else f"{base}_V{num_iteration}"
        if self.verbose > 0:
            _tracker_print(f"[SaveModelWeight@fmlbfgs] save model: {path}")
        with open(path, "w") as fo:
            for i, w in enumerate(weight[:self.model.param.num_weight]):
                fo.write(f"{i}\t{w:g}\n")

    # ── tasks ──

    def run(self):
        """Execute ``task``; the thread pool is released afterwards."""
        try:
            return self._run_task()
        finally:
            self.close()

    def _run_task(self):
        rank, world_size = self.ctx.rank, self.ctx.world_size
        if self.data is not None:
            if self.verbose > 0 and rank == 0:
                _tracker_print(f"[Run@fmlbfgs] data = {self.data}")
            self.dtrain = RowBlockIter.create(
                self.data, rank, world_size, self.batch_size)
        if self.model_in is not None:
            self.load_model(self.model_in)

        if self.task == "train":
            if self.val_data is not None:
                self.dval = RowBlockIter.create(
                    self.val_data, rank, world_size, self.batch_size)
            weight = self.solver.run()
            if rank == 0:
                if self.verbose > 0:
                    _tracker_print(f"[Run@fmlbfgs] save model_out: "
                                   f"{self.model_out}")
                self.save_model(self.model_out, weight)
                if self.name_weight is not None:
                    self.save_model_weight(weight)
            return weight
        if self.task == "pred":
            return self.task_pred()
        if self.task == "dump":
            return self.task_dump()
        raise ConfigError(f"unknown task: {self.task}")

    def task_pred(self) -> str:
        if self.model_in is None:
            raise ConfigError("must set model_in for task=pred")
        if self.dtrain is None:
            raise ConfigError("must set data for task=pred")
        path = self.name_pred
        if self.ctx.world_size > 1:
            path = f"{path}.{self.ctx.rank}"
        with open(path, "w") as fo:
            self.dtrain.reset()
            while self.dtrain.advance():
                for m in self.model.predict_block(self.dtrain.value()):
                    fo.write(f"{m:g}\n")
        if self.verbose > 0:
            _tracker_print(f"[TaskPred@fmlbfgs] finish writing to: {path}")
        return path

    def task_dump(self) -> str | None:
        if self.model_in is None:
            raise ConfigError("must set model_in for task=dump")
        if self.ctx.rank != 0:
            return None
        with open(self.name_dump, "w") as fo:
            self.model.dump(fo)
        if self.verbose > 0:
            _tracker_print(f"[TaskDump@fmlbfgs] finish dumping to "
                           f"{self.name_dump}")
        return self.name_dump


# ── CLI ──────────────────────────────────────────────────────────────────────


def _cli(argv=None):
    p = argparse.ArgumentParser(prog="fmlbfgs")
    sub = p.add_subparsers(dest="cmd")
    for task in ("train", "pred", "dump"):
        sp = sub.add_parser(task)
        sp.add_argument("params", nargs="*", metavar="name=value")
        sp.add_argument("--world-size", type=int, default=1,
                        help="number of in-process workers")

    args = p.parse_args(argv)
    if args.cmd is None:
        p.print_help()
        return 2

    pairs = []
    for item in args.params:
        name, sep, val = item.partition("=")
        if not sep or not name:
            p.error(f"expected name=value, got {item!r}")
        pairs.append((name, val))

    def _worker(ctx):
        with FmObjFunction(ctx) as obj:
            obj.set_param("task", args.cmd)
            for name, val in pairs:
                obj.set_param(name, val)
            obj.run()

    try:
        if args.world_size > 1:
            launch(args.world_size, _worker)
        else:
            _worker(WorkerContext.single())
    except FmError as e:
        print(f"fmlbfgs: error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(_cli())
