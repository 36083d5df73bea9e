"""Streaming JSON and whole-buffer binary codecs.

Encoding never materialises a whole dataset as one string: structural
tokens and individual elements are written to a bounded sink, which is
drained whenever its buffer passes the high-water mark.  Decoding uses
ijson's incremental parser, either element by element or materialising
the full value once parsed.  The binary codec is a single pickle read,
used for the large raw datasets where parse speed matters more than
streaming.
"""

import json
import logging
import pathlib
import pickle
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, TextIO, Union

import ijson
import numpy as np

from .constants import RAW_BINARY_SUFFIX, RAW_JSON_SUFFIX
from .models import CodecError

logger = logging.getLogger(__name__)

PathLike = Union[str, pathlib.Path]
ProgressCallback = Optional[Callable[[float, str], None]]

DEFAULT_HIGH_WATER_MARK = 1024 * 1024  # 1 MiB
DEFAULT_CHECKPOINT_INTERVAL = 5000


def _json_default(value):
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(',', ':'),
                      default=_json_default)


# ── Sink ───────────────────────────────────────────────────────────────

class BoundedSink:
    """Text sink with a bounded write buffer.

    ``write`` returns False once the buffered size reaches the high-water
    mark; the writer must then call ``drain`` before continuing.
    """

    def __init__(self, fp: TextIO, high_water_mark: int = DEFAULT_HIGH_WATER_MARK):
        self._fp = fp
        self.high_water_mark = max(1, int(high_water_mark))
        self._chunks: List[str] = []
        self._buffered = 0
        self.drain_count = 0
        self.peak_buffered = 0

    @property
    def buffered(self) -> int:
        return self._buffered

    def write(self, chunk: str) -> bool:
        self._chunks.append(chunk)
        self._buffered += len(chunk)
        if self._buffered > self.peak_buffered:
            self.peak_buffered = self._buffered
        return self._buffered < self.high_water_mark

    def drain(self) -> None:
        if self._chunks:
            self._fp.write(''.join(self._chunks))
            self._chunks.clear()
            self._buffered = 0
            self.drain_count += 1

    def close(self) -> None:
        self.drain()
        self._fp.flush()


class StreamEncoder:
    """Writes JSON values to a :class:`BoundedSink` one element at a time."""

    def __init__(self, sink: BoundedSink, progress_callback: ProgressCallback = None,
                 checkpoint_interval: int = DEFAULT_CHECKPOINT_INTERVAL):
        self.sink = sink
        self.progress_callback = progress_callback
        self.checkpoint_interval = max(1, checkpoint_interval)

    def _emit(self, chunk: str) -> None:
        if not self.sink.write(chunk):
            self.sink.drain()

    def _checkpoint(self, label: str, done: int, total: Optional[int]) -> None:
        if self.progress_callback is None:
            return
        if total:
            self.progress_callback(100.0 * done / total, f"{label} {done:,}/{total:,}")
        else:
            self.progress_callback(0.0, f"{label} {done:,}")

    def write_array(self, items: Iterable[Any], label: str = "items") -> int:
        """Stream *items* as a JSON array; returns the element count."""
        total = len(items) if hasattr(items, '__len__') else None
        self._emit('[')
        count = 0
        for item in items:
            if count:
                self._emit(',')
            self._emit(_dumps(item))
            count += 1
            if count % self.checkpoint_interval == 0:
                self._checkpoint(label, count, total)
        self._emit(']')
        return count

    def write_value(self, value: Any, label: str = "value") -> None:
        """Arrays and iterators stream element-wise; everything else is dumped whole."""
        if isinstance(value, (list, tuple, Iterator)):
            self.write_array(value, label)
        else:
            self._emit(_dumps(value))

    def write_object(self, data: Dict[str, Any]) -> None:
        """Stream a record, expanding each array-valued key element by element."""
        self._emit('{')
        for i, (key, value) in enumerate(data.items()):
            if i:
                self._emit(',')
            self._emit(f"{_dumps(str(key))}:")
            self.write_value(value, label=key)
        self._emit('}')


def _open_encoder(path: PathLike, high_water_mark: int, progress_callback,
                  checkpoint_interval: int):
    path = pathlib.Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fp = open(path, 'w', encoding='utf-8')
    sink = BoundedSink(fp, high_water_mark)
    return fp, sink, StreamEncoder(sink, progress_callback, checkpoint_interval)


def write_json_array(path: PathLike, items: Iterable[Any],
                     high_water_mark: int = DEFAULT_HIGH_WATER_MARK,
                     progress_callback: ProgressCallback = None,
                     checkpoint_interval: int = DEFAULT_CHECKPOINT_INTERVAL,
                     label: str = "items") -> int:
    """Write *items* to *path* as a JSON array without building the full string."""
    fp, sink, encoder = _open_encoder(path, high_water_mark, progress_callback,
                                      checkpoint_interval)
    with fp:
        count = encoder.write_array(items, label)
        sink.close()
    if progress_callback:
        progress_callback(100.0, f"{label} complete")
    return count


def write_json_object(path: PathLike, data: Dict[str, Any],
                      high_water_mark: int = DEFAULT_HIGH_WATER_MARK,
                      progress_callback: ProgressCallback = None,
                      checkpoint_interval: int = DEFAULT_CHECKPOINT_INTERVAL) -> None:
    """Write a record whose array values (lists or generators) are streamed."""
    fp, sink, encoder = _open_encoder(path, high_water_mark, progress_callback,
                                      checkpoint_interval)
    with fp:
        encoder.write_object(data)
        sink.close()


def write_feature_collection(path: PathLike, features: Iterable[dict],
                             high_water_mark: int = DEFAULT_HIGH_WATER_MARK,
                             progress_callback: ProgressCallback = None,
                             checkpoint_interval: int = DEFAULT_CHECKPOINT_INTERVAL) -> int:
    """Stream a GeoJSON FeatureCollection one feature at a time."""
    fp, sink, encoder = _open_encoder(path, high_water_mark, progress_callback,
                                      checkpoint_interval)
    with fp:
        encoder._emit('{"type":"FeatureCollection","features":')
        count = encoder.write_array(features, "features")
        encoder._emit('}')
        sink.close()
    return count


# ── Streaming decode ───────────────────────────────────────────────────

def read_json(path: PathLike) -> Any:
    """Incrementally parse *path* and return the fully built value."""
    path = pathlib.Path(path)
    try:
        with open(path, 'rb') as f:
            for value in ijson.items(f, '', use_float=True):
                return value
    except ijson.JSONError as e:
        raise CodecError(f"Malformed JSON in {path}: {e}") from e
    raise CodecError(f"No JSON value in {path}")


def iter_json_array(path: PathLike) -> Iterator:
    """Yield the elements of a top-level JSON array one at a time."""
    path = pathlib.Path(path)
    try:
        with open(path, 'rb') as f:
            yield from ijson.items(f, 'item', use_float=True)
    except ijson.JSONError as e:
        raise CodecError(f"Malformed JSON array in {path}: {e}") from e


def iter_json_batches(path: PathLike, batch_size: int) -> Iterator[List[Any]]:
    """Yield fixed-size lists of array elements; the last batch may be short."""
    batch: List[Any] = []
    for item in iter_json_array(path):
        batch.append(item)
        if len(batch) >= batch_size:
            yield batch
            batch = []
    if batch:
        yield batch


# ── Binary codec ───────────────────────────────────────────────────────

def write_binary(path: PathLike, value: Any) -> None:
    path = pathlib.Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'wb') as f:
        pickle.dump(value, f, protocol=pickle.HIGHEST_PROTOCOL)
    size_mb = path.stat().st_size / 1024 / 1024
    logger.debug(f"Wrote {path.name} ({size_mb:.1f} MB)")


def read_binary(path: PathLike) -> Any:
    """Read the whole file, then decode it in one pass."""
    path = pathlib.Path(path)
    data = path.read_bytes()
    try:
        return pickle.loads(data)
    except (pickle.UnpicklingError, EOFError, AttributeError, ValueError) as e:
        raise CodecError(f"Corrupt binary payload in {path}: {e}") from e


# ── Raw store ──────────────────────────────────────────────────────────

def raw_dataset_path(city_dir: PathLike, name: str) -> pathlib.Path:
    """Binary encoding wins when both encodings of a dataset exist."""
    city_dir = pathlib.Path(city_dir)
    binary = city_dir / f"{name}{RAW_BINARY_SUFFIX}"
    if binary.exists():
        return binary
    text = city_dir / f"{name}{RAW_JSON_SUFFIX}"
    if text.exists():
        return text
    raise FileNotFoundError(f"No raw {name} dataset in {city_dir}")


def load_raw_dataset(city_dir: PathLike, name: str) -> List[dict]:
    path = raw_dataset_path(city_dir, name)
    logger.info(f"Reading {path.name}...")
    if path.suffix == RAW_BINARY_SUFFIX:
        data = read_binary(path)
    else:
        data = read_json(path)
    if not isinstance(data, list):
        raise CodecError(f"{path} does not hold an array of features")
    logger.info(f"  -> {len(data):,} {name}")
    return data


def read_datasets_parallel(city_dir: PathLike, names: Sequence[str]) -> Dict[str, List[dict]]:
    """Decode independent datasets concurrently; any decode failure propagates."""
    with ThreadPoolExecutor(max_workers=max(1, len(names))) as executor:
        futures = {name: executor.submit(load_raw_dataset, city_dir, name) for name in names}
        return {name: future.result() for name, future in futures.items()}


def write_raw_dataset(city_dir: PathLike, name: str, records: Sequence[Any],
                      raw_format: str = 'json',
                      high_water_mark: int = DEFAULT_HIGH_WATER_MARK,
                      progress_callback: ProgressCallback = None) -> pathlib.Path:
    """Write a raw dataset, removing any stale copy in the other encoding."""
    city_dir = pathlib.Path(city_dir)
    city_dir.mkdir(parents=True, exist_ok=True)
    binary = city_dir / f"{name}{RAW_BINARY_SUFFIX}"
    text = city_dir / f"{name}{RAW_JSON_SUFFIX}"
    if raw_format == 'binary':
        write_binary(binary, list(records))
        text.unlink(missing_ok=True)
        return binary
    write_json_array(text, records, high_water_mark=high_water_mark,
                     progress_callback=progress_callback, label=name)
    binary.unlink(missing_ok=True)
    return text
