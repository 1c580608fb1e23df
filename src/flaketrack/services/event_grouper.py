"""Разбор потока событий ``go test -json`` и группировка по тестам.

Родитель/потомок определяется только по имени: ``A`` — предок ``B``, если
``B`` начинается с ``A + "/"``. Предки скрываются, поскольку их статус
дублирует статусы подтестов. Исключение: упавший предок, у которого ни один
ближайший потомок не упал, остаётся видимым, иначе падение в setup/teardown
родителя потерялось бы.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Sequence
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from flaketrack.models.common import TestResult
from flaketrack.models.events import TestEvent, TestGroup

logger = logging.getLogger(__name__)


def parse_events(lines: Iterable[str | bytes]) -> list[TestEvent]:
    """Разобрать построчный JSON, пропуская всё, что не является событием.

    Символы NUL вырезаются (их вставляют раннеры под Windows), строки,
    не начинающиеся с ``{``, и строки с битым JSON молча пропускаются.
    """
    events: list[TestEvent] = []
    skipped = 0
    for raw in lines:
        line = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        line = line.replace("\x00", "").strip()
        if not line.startswith("{"):
            continue
        try:
            payload = json.loads(line)
            events.append(TestEvent.model_validate(payload))
        except (json.JSONDecodeError, PydanticValidationError, TypeError):
            skipped += 1
            continue

    if skipped:
        logger.debug("Skipped %d malformed event lines", skipped)
    return events


def parse_events_file(path: str | Path) -> list[TestEvent]:
    """Прочитать файл событий. Ошибка открытия файла пробрасывается."""
    with open(path, "rb") as fh:
        events = parse_events(fh)
    logger.info("Parsed %d events from %s", len(events), path)
    return events


def group_events(events: Sequence[TestEvent]) -> list[TestGroup]:
    """Сгруппировать события по имени теста в порядке первого появления.

    Для каждой группы статус перезаписывается действием каждого события,
    ``start``/``end`` расширяются до покрытия времени всех событий,
    ``duration`` берётся из ``elapsed`` последнего события.
    """
    groups: dict[str, TestGroup] = {}

    for event in events:
        if not event.test:
            continue
        group = groups.get(event.test)
        if group is None:
            group = TestGroup(test_name=event.test)
            groups[event.test] = group

        group.events.append(event.model_copy(update={"output": event.output.strip(" ")}))
        group.status = event.action
        if event.time is not None:
            if group.start is None or event.time < group.start:
                group.start = event.time
            if group.end is None or event.time > group.end:
                group.end = event.time

    for group in groups.values():
        group.duration = group.events[-1].elapsed

    _mark_hidden_ancestors(groups)
    return list(groups.values())


# --- Иерархия имён ---


def _ancestor_names(name: str) -> Iterable[str]:
    """Все префиксы имени по границам ``/``, от ближайшего к дальнему."""
    pos = name.rfind("/")
    while pos > 0:
        yield name[:pos]
        pos = name.rfind("/", 0, pos)


def _mark_hidden_ancestors(groups: dict[str, TestGroup]) -> None:
    # Ближайший наблюдаемый предок для каждого имени: так «прямые потомки»
    # определены и при пропущенных промежуточных уровнях (A и A/b/c без A/b).
    children: dict[str, list[TestGroup]] = {}
    for name, group in groups.items():
        for ancestor in _ancestor_names(name):
            if ancestor in groups:
                children.setdefault(ancestor, []).append(group)
                break

    for name, kids in children.items():
        parent = groups[name]
        fail = TestResult.FAIL.value
        if parent.status == fail and all(kid.status != fail for kid in kids):
            logger.debug("Keeping failed parent %s visible: no failed subtests", name)
            continue
        parent.hidden = True
