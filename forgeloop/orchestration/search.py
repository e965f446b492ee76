from __future__ import annotations

import math
import random
import weakref
from typing import Any, Iterator, Sequence

from ..core import metrics
from ..core.config import SearchSettings
from ..core.errors import SearchError
from ..core.logging import get_logger

logger = get_logger(name=__name__)


class SearchNode:
    """One decision point in the search tree.

    Children are owned by their parent; the back-reference to the parent is
    weak so a subtree never keeps its ancestors alive on its own.
    """

    __slots__ = ("_parent_ref", "index", "action", "children", "visits", "total_score", "hints", "info", "__weakref__")

    def __init__(self, parent: SearchNode | None, index: int, action: str | None = None) -> None:
        self._parent_ref = weakref.ref(parent) if parent is not None else None
        self.index = index
        self.action = action
        self.children: list[SearchNode] = []
        self.visits = 0
        self.total_score = 0.0
        self.hints: list[Any] = []
        self.info: dict[str, Any] = {}

    @property
    def parent(self) -> SearchNode | None:
        return self._parent_ref() if self._parent_ref is not None else None

    def add_child(self, action: str | None = None) -> SearchNode:
        child = SearchNode(self, len(self.children), action)
        self.children.append(child)
        return child

    def update(self, score: float) -> None:
        self.visits += 1
        self.total_score += score

    def mean_score(self) -> float:
        return self.total_score / self.visits if self.visits else 0.0

    def ucb1(self, exploration_constant: float) -> float:
        if self.visits == 0:
            return 0.0
        parent = self.parent
        parent_visits = parent.visits if parent is not None else 0
        exploration = math.sqrt(math.log(max(parent_visits, 1)) / self.visits)
        return self.mean_score() + exploration_constant * exploration

    def is_leaf_or_single_path(self) -> bool:
        node = self
        while len(node.children) == 1:
            node = node.children[0]
        return not node.children

    def iter_subtree(self) -> Iterator[SearchNode]:
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def count_descendants(self) -> int:
        """Size of the subtree rooted here, this node included."""
        return sum(1 for _ in self.iter_subtree())

    def expansion_probability(self) -> float:
        return 1.0 / self.count_descendants()

    def node_chain(self) -> list[SearchNode]:
        """Nodes from the first level down to this one; the root is excluded."""
        chain: list[SearchNode] = []
        node: SearchNode | None = self
        while node is not None and node.parent is not None:
            chain.append(node)
            node = node.parent
        chain.reverse()
        return chain

    def path(self) -> str:
        return ".".join(str(node.index) for node in self.node_chain())

    def action_path(self) -> str:
        return ".".join(node.action or str(node.index) for node in self.node_chain())

    def __repr__(self) -> str:
        return f"SearchNode(path={self.path()!r}, visits={self.visits}, mean={self.mean_score():.3f})"


class SearchChoice:
    """Handle for the node picked by :meth:`SearchController.choose`."""

    __slots__ = ("controller", "node")

    def __init__(self, controller: SearchController, node: SearchNode) -> None:
        self.controller = controller
        self.node = node

    @property
    def action(self) -> str | None:
        return self.node.action

    @property
    def path(self) -> str:
        return self.node.path()

    def filename(self, name: str) -> str:
        """Namespace ``name`` by the node path: ``code.js`` becomes ``code.0.1.js``."""
        if self.node.parent is None:
            return name
        stem, dot, extension = name.partition(".")
        if dot:
            return f"{stem}.{self.path}.{extension}"
        return f"{name}.{self.path}"

    def score(self, value: float) -> None:
        self.controller.backpropagate(self.node, value)

    def estimate(self, value: float) -> None:
        """Score only if the node was never visited; real observations win."""
        if self.node.visits == 0:
            self.controller.backpropagate(self.node, value)


class SearchController:
    """Monte-Carlo tree search over workflow decisions.

    Each :meth:`choose` descends one level from the current node, either
    reusing the best existing child or expanding a new one. Scores are folded
    back with :meth:`score`. :meth:`reset` starts a new episode at the root
    while keeping everything learned so far.
    """

    def __init__(
        self,
        exploration_constant: float = 1.0,
        new_child_weight: float = 2.0,
        seed: str | int | None = None,
    ) -> None:
        self.exploration_constant = exploration_constant
        self.new_child_weight = new_child_weight
        self.root = SearchNode(None, -1)
        self.current = self.root
        self.num_expands = 0
        self._rng = random.Random(seed if seed is not None else repr(exploration_constant))

    @classmethod
    def from_settings(cls, settings: SearchSettings) -> SearchController:
        return cls(
            exploration_constant=settings.exploration_constant,
            new_child_weight=settings.new_child_weight,
            seed=settings.seed,
        )

    def reset(self) -> None:
        self.current = self.root
        self.num_expands = 0

    def _normalized_ucb1(self, node: SearchNode) -> float:
        return node.ucb1(self.exploration_constant) / (self.exploration_constant + 1)

    def new_child_score(self, node: SearchNode) -> float:
        return self.new_child_weight / (len(node.children) + 1)

    def choose(self, actions: Sequence[str] | None = None) -> SearchChoice:
        current = self.current
        selected = self.select_best_child(current)
        fully_expanded = actions is not None and len(current.children) >= len(actions)
        expand = selected is None
        if selected is not None:
            score = self._normalized_ucb1(selected)
            new_score = self.new_child_score(current)
            expand = new_score > score
            if self.num_expands == 0 and selected.is_leaf_or_single_path():
                probability = selected.expansion_probability()
                expand = self._rng.random() < probability or expand
                logger.debug("search_single_path_draw", path=selected.path(), probability=probability, expand=expand)
            logger.debug("search_candidate", path=selected.path(), score=score, new_score=new_score)

        if expand and not fully_expanded:
            action = actions[len(current.children)] if actions is not None else None
            selected = self.expand(current, action)
            metrics.record_search_decision(decision="expand")
            logger.debug("search_expand", path=selected.path(), action=action)
        elif selected is None:
            raise SearchError("Fixed action list is fully expanded but no child can be selected")
        else:
            metrics.record_search_decision(decision="reuse")
            logger.debug("search_reuse", path=selected.path())

        if selected.parent is not current:
            raise SearchError("Chosen node is not a child of the current node")
        self.current = selected
        return SearchChoice(self, selected)

    def select_best_child(self, node: SearchNode) -> SearchNode | None:
        best: SearchNode | None = None
        best_score = 0.0
        for child in node.children:
            score = child.ucb1(self.exploration_constant)
            if best is None or score > best_score:
                best, best_score = child, score
        return best

    def expand(self, node: SearchNode, action: str | None = None) -> SearchNode:
        self.num_expands += 1
        return node.add_child(action)

    def backpropagate(self, node: SearchNode, value: float) -> None:
        current: SearchNode | None = node
        while current is not None:
            current.update(value)
            current = current.parent

    def score(self, value: float) -> None:
        self.backpropagate(self.current, value)

    def estimate(self, value: float) -> None:
        if self.current.visits == 0:
            self.backpropagate(self.current, value)

    def all_leaf_nodes(self) -> list[SearchNode]:
        return [node for node in self.root.iter_subtree() if not node.children]

    def best_leaf_nodes(self) -> list[SearchNode]:
        leaves = [node for node in self.all_leaf_nodes() if node.visits > 0]
        leaves.sort(key=lambda node: node.mean_score(), reverse=True)
        return leaves


__all__ = ["SearchNode", "SearchChoice", "SearchController"]
