"""Leading-tag extraction and tag to task resolution with a shared cache."""

import logging
import re
import threading
from typing import Dict, Iterable, List, Optional

from .models import Task
from .stores import TaskStore

logger = logging.getLogger(__name__)

# '#' followed by Unicode letters, digits, underscore or hyphen, at the start
# of the text after optional whitespace.
LEADING_TAG = re.compile(r"^\s*(#[\w-]+)")


class MissingGenericTaskError(RuntimeError):
    """No task carries the configured generic tag."""


class TagCache:
    """Process-wide mapping of normalized tag to Task.

    Safe for concurrent readers and writers. Entries are derived from durable
    storage, so a race between two writers for the same tag may be won by
    either of them.
    """

    def __init__(self):
        self._entries: Dict[str, Task] = {}
        self._lock = threading.RLock()

    def get(self, tag: str) -> Optional[Task]:
        with self._lock:
            return self._entries.get(tag)

    def put(self, tag: str, task: Task) -> None:
        with self._lock:
            self._entries[tag] = task

    def remove_task(self, task_id: int) -> List[str]:
        """Drop every entry pointing at ``task_id``; returns the removed tags."""
        with self._lock:
            stale = [tag for tag, task in self._entries.items() if task.id == task_id]
            for tag in stale:
                del self._entries[tag]
            return stale

    def replace_all(self, entries: Dict[str, Task]) -> None:
        with self._lock:
            self._entries = dict(entries)

    def snapshot(self) -> Dict[str, Task]:
        with self._lock:
            return dict(self._entries)

    def __contains__(self, tag: str) -> bool:
        with self._lock:
            return tag in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class TagResolver:
    """Resolves free-text tags to tasks, falling back to the generic task."""

    def __init__(self, task_store: TaskStore, cache: TagCache, generic_tag: str = "#GENERICO"):
        """Initialize tag resolver.

        Args:
            task_store: Task storage used on cache misses
            cache: Shared tag cache, also used by the ingestion engine
            generic_tag: Tag of the fallback task
        """
        self.task_store = task_store
        self.cache = cache
        self.generic_tag = self.normalize(generic_tag)
        if self.generic_tag is None:
            raise ValueError("generic_tag must not be empty")
        self.logger = logger.getChild('resolver')

    @staticmethod
    def extract_leading_tag(text: Optional[str]) -> Optional[str]:
        """Return the leading ``#tag`` of ``text`` (e.g. ``"#ACCIO_PROJETO standup"``), or None."""
        if text is None:
            return None
        match = LEADING_TAG.match(text)
        return match.group(1).strip() if match else None

    @staticmethod
    def normalize(tag: Optional[str]) -> Optional[str]:
        """Trim and ensure a '#' prefix. Case is preserved on purpose."""
        if tag is None:
            return None
        t = tag.strip()
        if not t:
            return None
        if not t.startswith('#'):
            t = '#' + t
        return t

    def normalized_leading_tag(self, text: Optional[str]) -> Optional[str]:
        return self.normalize(self.extract_leading_tag(text))

    def load(self) -> int:
        """Rebuild the cache from every stored task.

        Returns:
            Number of cached tags

        Raises:
            MissingGenericTaskError: If no task has the generic tag
        """
        entries: Dict[str, Task] = {}
        for task in self.task_store.all_tasks():
            key = self.normalize(task.tag)
            if key is not None:
                entries[key] = task
        self.cache.replace_all(entries)

        if self.generic_tag not in entries:
            raise MissingGenericTaskError(
                f"Generic task {self.generic_tag} not found. Create it before starting ingestion."
            )
        self.logger.info(f"Tag cache loaded with {len(entries)} tags")
        return len(entries)

    def generic_task(self) -> Task:
        """Return the fallback task.

        Raises:
            MissingGenericTaskError: If no task has the generic tag
        """
        cached = self.cache.get(self.generic_tag)
        if cached is not None:
            return cached
        task = self.task_store.find_by_tag(self.generic_tag)
        if task is None:
            raise MissingGenericTaskError(f"Generic task {self.generic_tag} not found.")
        self.cache.put(self.generic_tag, task)
        return task

    def resolve(self, raw_tag_or_text: Optional[str]) -> Task:
        """Resolve a tag, or the leading tag of a title, to its task or the generic task."""
        candidate = self.extract_leading_tag(raw_tag_or_text) or raw_tag_or_text
        normalized = self.normalize(candidate)
        if normalized is not None:
            cached = self.cache.get(normalized)
            if cached is not None:
                return cached

            task = self.task_store.find_by_tag(normalized)
            if task is not None:
                self.cache.put(normalized, task)
                return task
        return self.generic_task()

    def resolve_bulk(self, raw_tags: Optional[Iterable[str]]) -> Dict[str, Task]:
        """Resolve many tags with at most one storage query.

        Tags found neither in the cache nor in storage are absent from the
        result; callers apply the generic fallback themselves.

        Args:
            raw_tags: Tags, normalized or not; None and blank values are ignored

        Returns:
            Mapping of normalized tag to task
        """
        result: Dict[str, Task] = {}
        if not raw_tags:
            return result

        normalized: List[str] = []
        seen = set()
        for raw in raw_tags:
            tag = self.normalize(raw)
            if tag is not None and tag not in seen:
                seen.add(tag)
                normalized.append(tag)

        missing: List[str] = []
        for tag in normalized:
            cached = self.cache.get(tag)
            if cached is not None:
                result[tag] = cached
            else:
                missing.append(tag)

        if missing:
            for task in self.task_store.find_by_tags(missing):
                key = self.normalize(task.tag)
                if key is not None:
                    self.cache.put(key, task)
                    result[key] = task
            self.logger.debug(
                f"Resolved {len(normalized)} tags: {len(normalized) - len(missing)} cached, "
                f"{len(missing)} looked up"
            )

        return result

    def on_task_saved(self, task: Task) -> None:
        """Keep the cache consistent after a task is created, updated or renamed."""
        self.cache.remove_task(task.id)
        key = self.normalize(task.tag)
        if key is not None:
            self.cache.put(key, task)

    def on_task_deleted(self, task_id: int) -> None:
        self.cache.remove_task(task_id)
