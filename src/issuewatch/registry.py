from __future__ import annotations

import dataclasses
import threading
from typing import Iterable

from .models import Query, Source


class SourceRegistry:
    """
    被监控 Source 的内存列表。

    Source/Query 都是不可变对象，snapshot() 返回的元组不会被后续编辑修改；
    编辑只有在调用方显式 restart() 调度后才会影响轮询。
    """

    def __init__(self, sources: Iterable[Source] = ()) -> None:
        self._lock = threading.Lock()
        self._sources: list[Source] = []
        for source in sources:
            self.add_source(source)

    def snapshot(self) -> tuple[Source, ...]:
        with self._lock:
            return tuple(self._sources)

    def enabled_sources(self) -> tuple[Source, ...]:
        return tuple(s for s in self.snapshot() if s.enabled)

    def get(self, source_id: str) -> Source | None:
        with self._lock:
            for s in self._sources:
                if s.source_id == source_id:
                    return s
        return None

    def add_source(self, source: Source) -> None:
        query_ids = [q.query_id for q in source.queries]
        if len(set(query_ids)) != len(query_ids):
            raise ValueError(f"duplicate query id in source {source.source_id}")
        with self._lock:
            if any(s.source_id == source.source_id for s in self._sources):
                raise ValueError(f"duplicate source id: {source.source_id}")
            self._sources.append(source)

    def update_source(self, source: Source) -> Source:
        """
        按 source_id 替换，返回旧值；不存在时抛 KeyError。
        """
        query_ids = [q.query_id for q in source.queries]
        if len(set(query_ids)) != len(query_ids):
            raise ValueError(f"duplicate query id in source {source.source_id}")
        with self._lock:
            for i, s in enumerate(self._sources):
                if s.source_id == source.source_id:
                    self._sources[i] = source
                    return s
        raise KeyError(source.source_id)

    def remove_source(self, source_id: str) -> Source:
        with self._lock:
            for i, s in enumerate(self._sources):
                if s.source_id == source_id:
                    return self._sources.pop(i)
        raise KeyError(source_id)

    def remove_query(self, source_id: str, query_id: str) -> Query:
        with self._lock:
            for i, s in enumerate(self._sources):
                if s.source_id != source_id:
                    continue
                query = s.find_query(query_id)
                if query is None:
                    break
                self._sources[i] = dataclasses.replace(
                    s,
                    queries=tuple(q for q in s.queries if q.query_id != query_id),
                )
                return query
        raise KeyError(f"{source_id}/{query_id}")
