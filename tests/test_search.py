from __future__ import annotations

import gc

import pytest

from forgeloop.core.config import SearchSettings
from forgeloop.core.errors import SearchError
from forgeloop.orchestration.builder import GenerationBuilder
from forgeloop.orchestration.search import SearchController, SearchNode
from forgeloop.schemas.artifacts import OverwritePolicy
from tests.helpers.stubs import make_engine


def _episode(controller: SearchController, depth: int = 2) -> list[str]:
    controller.reset()
    return [controller.choose().path for _ in range(depth)]


def test_first_choices_expand_and_namespace_filenames() -> None:
    controller = SearchController()

    first = controller.choose()
    second = controller.choose()

    assert first.path == "0"
    assert second.path == "0.0"
    assert first.filename("code.js") == "code.0.js"
    assert second.filename("code.js") == "code.0.0.js"
    assert second.filename("notes") == "notes.0.0"
    assert controller.num_expands == 2


def test_unscored_branch_is_never_revisited() -> None:
    controller = SearchController()
    assert controller.choose().path == "0"
    controller.reset()
    second = controller.choose()
    assert second.path == "1"
    second.score(1.0)

    for _ in range(100):
        controller.reset()
        assert controller.choose().path != "0"


def test_search_keeps_exploiting_good_branch_and_still_explores() -> None:
    controller = SearchController()
    controller.choose()
    controller.choose()
    controller.score(1.0)

    first_levels: list[str] = []
    for _ in range(100):
        controller.reset()
        first = controller.choose()
        controller.choose()
        controller.score(1.0 if first.path == "0" else 0.0)
        first_levels.append(first.path)

    assert first_levels.count("0") >= 2
    assert any(path != "0" for path in first_levels)
    assert controller.root.visits == 101


def test_same_seed_gives_same_decisions() -> None:
    def run(seed: str) -> list[list[str]]:
        controller = SearchController(seed=seed)
        paths = []
        for episode in range(20):
            paths.append(_episode(controller))
            controller.score(1.0 if episode % 3 == 0 else 0.25)
        return paths

    assert run("fixed") == run("fixed")


def test_backpropagate_updates_every_ancestor() -> None:
    controller = SearchController()
    controller.choose()
    leaf = controller.choose()

    leaf.score(0.5)
    controller.reset()

    chain = leaf.node.node_chain()
    assert [node.path() for node in chain] == ["0", "0.0"]
    assert all(node.visits == 1 and node.total_score == 0.5 for node in chain)
    assert controller.root.visits == 1


def test_estimate_only_scores_unvisited_nodes() -> None:
    controller = SearchController()
    choice = controller.choose()

    choice.estimate(0.5)
    choice.estimate(0.9)
    choice.score(1.0)

    assert choice.node.visits == 2
    assert choice.node.mean_score() == pytest.approx(0.75)


def test_best_leaf_nodes_sorted_by_mean_score() -> None:
    controller = SearchController()
    low = controller.expand(controller.root)
    high = controller.expand(controller.root)
    unvisited = controller.root.add_child()
    controller.backpropagate(low, 0.2)
    controller.backpropagate(high, 0.9)

    assert controller.best_leaf_nodes() == [high, low]
    assert unvisited in controller.all_leaf_nodes()


def test_fixed_actions_are_used_in_order_then_reused() -> None:
    controller = SearchController()
    actions = ["draft", "revise"]

    assert controller.choose(actions).action == "draft"
    controller.reset()
    assert controller.choose(actions).action == "revise"
    controller.reset()
    reused = controller.choose(actions)

    assert reused.action in actions
    assert len(controller.root.children) == 2
    assert reused.node.action_path() == reused.action


def test_empty_action_list_cannot_be_chosen_from() -> None:
    controller = SearchController()

    with pytest.raises(SearchError):
        controller.choose([])


def test_chosen_node_must_be_child_of_current() -> None:
    controller = SearchController()
    other = SearchController()
    foreign = other.expand(other.root)
    controller.expand = lambda node, action=None: foreign

    with pytest.raises(SearchError):
        controller.choose()


def test_parent_reference_is_weak() -> None:
    root = SearchNode(None, -1)
    child = root.add_child("x")

    linked = child.parent is root
    del root
    gc.collect()
    assert linked
    assert child.parent is None


def test_new_child_score_and_settings() -> None:
    controller = SearchController.from_settings(
        SearchSettings(exploration_constant=2.0, new_child_weight=3.0, seed="abc")
    )

    assert controller.exploration_constant == 2.0
    assert controller.new_child_score(controller.root) == 3.0
    controller.expand(controller.root)
    assert controller.new_child_score(controller.root) == 1.5


async def _write_code(engine, controller: SearchController, policy: OverwritePolicy):
    controller.reset()
    choice = controller.choose(["plain", "typed"])
    result = await (
        GenerationBuilder(engine)
        .output_file(choice.filename("code.out"))
        .overwrite(policy)
        .prompt(f"Write the {choice.action} version.")
        .run()
    )
    return choice, result


@pytest.mark.asyncio
async def test_search_branches_drive_builder_output_names_and_cache() -> None:
    engine, api = make_engine("plain code", "typed code")
    controller = SearchController()

    first, first_result = await _write_code(engine, controller, OverwritePolicy.EXACT)
    first.score(0.0)
    second, second_result = await _write_code(engine, controller, OverwritePolicy.EXACT)
    second.score(1.0)

    assert first_result.artifact.metadata.name == "code.0.out"
    assert second_result.artifact.metadata.name == "code.1.out"
    assert sorted(await engine.store.list_artifacts("code.")) == ["code.0.out", "code.1.out"]
    assert api.calls == 2

    reused, reused_result = await _write_code(engine, controller, OverwritePolicy.EXACT)
    assert reused.node is second.node
    assert reused_result.engine_result.cached
    assert reused_result.output == "typed code"

    reused.score(1.0)
    again, again_result = await _write_code(engine, controller, OverwritePolicy.SKIP)
    assert again.path == "1"
    assert again_result.artifact.metadata.name == "code.1.out"
    assert again_result.engine_result.cached
    assert api.calls == 2
