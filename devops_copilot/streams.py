from __future__ import annotations

import asyncio
import codecs
from collections import deque
from typing import AsyncIterable, AsyncIterator, Deque, Dict, Optional, Tuple

from .logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_BUFFER = 64


class _TeeSource:
  """
  Shared state behind the readers of one teed stream.

  Chunks pulled from the upstream iterator are buffered until every attached
  reader has consumed them. A reader that is ``max_buffer`` chunks ahead of
  the slowest attached reader waits instead of pulling more, so memory stays
  bounded by the lag between readers. Upstream pulls run in their own task so
  cancelling a reader never interrupts the upstream iterator halfway.
  """

  def __init__(self, source: AsyncIterable[bytes], max_buffer: int) -> None:
    self._iterator = source.__aiter__()
    self._max_buffer = max(1, max_buffer)
    self._buffer: Deque[bytes] = deque()
    self._base = 0
    self._positions: Dict[int, int] = {}
    self._finished = False
    self._error: Optional[BaseException] = None
    self._pull_task: Optional[asyncio.Future] = None
    self._condition = asyncio.Condition()

  def attach(self, reader_id: int) -> None:
    self._positions[reader_id] = self._base

  @property
  def buffered(self) -> int:
    return len(self._buffer)

  async def next_chunk(self, reader_id: int) -> bytes:
    while True:
      async with self._condition:
        position = self._positions[reader_id]
        index = position - self._base
        if index < len(self._buffer):
          chunk = self._buffer[index]
          self._positions[reader_id] = position + 1
          self._release()
          return chunk
        if self._finished:
          if self._error is not None:
            raise self._error
          raise StopAsyncIteration
        if len(self._buffer) >= self._max_buffer:
          await self._condition.wait()
          continue
        if self._pull_task is None:
          self._pull_task = asyncio.ensure_future(self._pull())
        pull_task = self._pull_task
      await asyncio.shield(pull_task)

  async def detach(self, reader_id: int) -> None:
    async with self._condition:
      if self._positions.pop(reader_id, None) is None:
        return
      self._release()
      abandoned = not self._positions and not self._finished
      if abandoned:
        self._finished = True
      pull_task = self._pull_task

    if abandoned:
      await self._close_upstream(pull_task)

  async def _pull(self) -> None:
    chunk: Optional[bytes] = None
    error: Optional[BaseException] = None
    finished = False
    try:
      raw = await self._iterator.__anext__()
      chunk = raw.encode("utf-8") if isinstance(raw, str) else bytes(raw)
    except StopAsyncIteration:
      finished = True
    except Exception as exc:
      finished = True
      error = exc

    async with self._condition:
      self._pull_task = None
      if finished:
        self._finished = True
        self._error = error
      elif not self._finished:
        self._buffer.append(chunk)
      self._condition.notify_all()

  def _release(self) -> None:
    if self._positions:
      floor = min(self._positions.values())
    else:
      floor = self._base + len(self._buffer)
    while self._buffer and self._base < floor:
      self._buffer.popleft()
      self._base += 1
    self._condition.notify_all()

  async def _close_upstream(self, pull_task: Optional[asyncio.Future]) -> None:
    if pull_task is not None and not pull_task.done():
      pull_task.cancel()
      await asyncio.wait({pull_task})
    aclose = getattr(self._iterator, "aclose", None)
    if aclose is None:
      return
    try:
      await aclose()
    except Exception as exc:
      logger.debug(f"Closing abandoned upstream stream failed: {exc}")


class TeeReader:
  """One independent cursor over a teed stream."""

  def __init__(self, source: _TeeSource, reader_id: int) -> None:
    self._source = source
    self._reader_id = reader_id
    self._closed = False
    source.attach(reader_id)

  def __aiter__(self) -> "TeeReader":
    return self

  async def __anext__(self) -> bytes:
    if self._closed:
      raise StopAsyncIteration
    try:
      return await self._source.next_chunk(self._reader_id)
    except BaseException:
      await self.aclose()
      raise

  @property
  def closed(self) -> bool:
    return self._closed

  async def aclose(self) -> None:
    if self._closed:
      return
    self._closed = True
    await self._source.detach(self._reader_id)


def tee(
  source: AsyncIterable[bytes],
  n: int = 2,
  max_buffer: int = DEFAULT_MAX_BUFFER,
) -> Tuple[TeeReader, ...]:
  """
  Split a read-once byte stream into ``n`` independently readable copies.

  Every reader sees the same chunks in the same order, and an upstream error
  is re-raised to every reader after the chunks that preceded it.
  """
  if n < 1:
    raise ValueError("tee needs at least one reader")
  shared = _TeeSource(source, max_buffer)
  return tuple(TeeReader(shared, index) for index in range(n))


async def one_shot_stream(text: str) -> AsyncIterator[bytes]:
  """A stream that emits ``text`` once, for gateways that answered without streaming."""
  yield text.encode("utf-8")


async def collect_text(stream: AsyncIterable[bytes]) -> str:
  """Read a byte stream to the end and decode it as UTF-8."""
  decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
  parts = []
  async for chunk in stream:
    if chunk:
      parts.append(decoder.decode(chunk))
  parts.append(decoder.decode(b"", final=True))
  return "".join(parts)
