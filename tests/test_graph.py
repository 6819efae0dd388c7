from __future__ import annotations

import allure
import pytest

from sequencer.errors import CircularDependencyError, UnknownDependencyError
from sequencer.tasks.graph import build_waves, order_by_dependencies

pytestmark = [
    allure.epic("Task Discovery"),
    allure.feature("Dependency Graph"),
]

A = "2024_01_01_000000_a"
B = "2024_01_02_000000_b"
C = "2024_01_03_000000_c"
D = "2024_01_04_000000_d"


def _names(waves) -> list[list[str]]:
    return [[task.name for task in wave] for wave in waves]


def test_independent_operations_share_one_wave(tasks) -> None:
    waves = build_waves([tasks.operation(B), tasks.operation(A), tasks.operation(C)])

    assert _names(waves) == [[A, B, C]]


def test_migrations_form_the_first_wave(tasks) -> None:
    waves = build_waves(
        [
            tasks.operation(A),
            tasks.migration("2024_02_01_000000_schema"),
            tasks.migration("2023_12_31_000000_base"),
        ],
    )

    assert _names(waves) == [
        ["2023_12_31_000000_base", "2024_02_01_000000_schema"],
        [A],
    ]


def test_diamond_dependencies_produce_three_waves(tasks) -> None:
    waves = build_waves(
        [
            tasks.operation(A),
            tasks.operation(B, depends_on=(A,)),
            tasks.operation(C, depends_on=(A,)),
            tasks.operation(D, depends_on=(B, C)),
        ],
    )

    assert _names(waves) == [[A], [B, C], [D]]


def test_every_task_lands_after_its_dependencies(tasks) -> None:
    selected = [
        tasks.operation(D, depends_on=(A,)),
        tasks.operation(C, depends_on=(D,)),
        tasks.operation(B),
        tasks.operation(A, depends_on=(B,)),
    ]
    waves = build_waves(selected)
    wave_of = {task.name: index for index, wave in enumerate(waves) for task in wave}

    for task in selected:
        for dependency in task.dependencies:
            assert wave_of[task.name] > wave_of[dependency]
    assert sorted(wave_of) == sorted(task.name for task in selected)


def test_cycle_is_detected_before_anything_runs(tasks) -> None:
    with pytest.raises(CircularDependencyError, match="Circular dependency detected") as info:
        build_waves(
            [
                tasks.operation(A, depends_on=(C,)),
                tasks.operation(B, depends_on=(A,)),
                tasks.operation(C, depends_on=(B,)),
                tasks.operation(D),
            ],
        )

    assert sorted(info.value.names) == [A, B, C]


def test_self_dependency_is_a_cycle(tasks) -> None:
    with pytest.raises(CircularDependencyError):
        order_by_dependencies([tasks.operation(A, depends_on=(A,))])


def test_unknown_dependency_is_rejected(tasks) -> None:
    with pytest.raises(UnknownDependencyError, match="2099_01_01_000000_missing"):
        build_waves([tasks.operation(A, depends_on=("2099_01_01_000000_missing",))])


def test_dependency_completed_in_history_is_satisfied(tasks) -> None:
    waves = build_waves([tasks.operation(B, depends_on=(A,))], completed={A})

    assert _names(waves) == [[B]]


def test_operation_may_depend_on_a_selected_migration(tasks) -> None:
    waves = build_waves(
        [
            tasks.migration("2024_05_01_000000_schema"),
            tasks.operation(A, depends_on=("2024_05_01_000000_schema",)),
        ],
    )

    assert _names(waves) == [["2024_05_01_000000_schema"], [A]]


def test_order_by_dependencies_keeps_timestamp_order_when_possible(tasks) -> None:
    ordered = order_by_dependencies(
        [
            tasks.operation(A, depends_on=(C,)),
            tasks.operation(B),
            tasks.operation(C),
            tasks.operation(D),
        ],
    )

    assert [task.name for task in ordered] == [B, C, A, D]
