"""
Incremental sender -> recipient transfer graph.

Backed by a NetworkX DiGraph: each (sender, recipient) edge keeps the list of
amounts transferred in its "amounts" attribute. Supports depth-bounded cluster
discovery, a cheap degree-based centrality, betweenness centrality (exact up
to BETWEENNESS_CUTOVER nodes, local approximation above), common funding
sources and per-address transaction patterns.

Node iteration order is insertion order: a node is registered the first time
it appears as sender or recipient. Cluster roots are tried in that order, so
the earliest-seen sender of a connected group becomes its root.

Not thread-safe; callers serialize mutation (see DetectionPipeline).
"""

from __future__ import annotations

import statistics
from dataclasses import dataclass
from typing import Any, Iterable

import networkx as nx

from backend_dustwatch.dustwatch_logging import get_logger

logger = get_logger(__name__)

DEFAULT_CLUSTER_DEPTH = 3
BETWEENNESS_CUTOVER = 1000
SECOND_DEGREE_WEIGHT = 0.5
AMOUNTS_ATTR = "amounts"


@dataclass
class TransactionPatterns:
    """Flow summary for one address."""

    outgoing_count: int
    incoming_count: int
    unique_targets: int
    unique_sources: int
    average_outgoing_amount: float
    average_incoming_amount: float
    pattern_regularity: float
    """1 - cv/(1+cv) over outgoing amounts; 0 with fewer than two transfers."""

    def to_dict(self) -> dict[str, Any]:
        return {
            "outgoing_count": self.outgoing_count,
            "incoming_count": self.incoming_count,
            "unique_targets": self.unique_targets,
            "unique_sources": self.unique_sources,
            "average_outgoing_amount": self.average_outgoing_amount,
            "average_incoming_amount": self.average_incoming_amount,
            "pattern_regularity": self.pattern_regularity,
        }


@dataclass
class NetworkPattern:
    cluster_size: int
    centrality_score: float
    betweenness: float
    recipient_overlap: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "cluster_size": self.cluster_size,
            "centrality_score": self.centrality_score,
            "betweenness": self.betweenness,
            "recipient_overlap": self.recipient_overlap,
        }


class AddressGraph:
    """Directed transfer graph with cached betweenness (invalidated on every edge)."""

    def __init__(self, betweenness_cutover: int = BETWEENNESS_CUTOVER) -> None:
        self._graph = nx.DiGraph()
        self._generation = 0
        self._betweenness_cache: dict[str, tuple[int, float]] = {}
        self._exact_cache: tuple[int, dict[str, float]] | None = None
        self._betweenness_cutover = betweenness_cutover

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add_edge(self, sender: str, recipient: str, amount: float = 0.0) -> None:
        """Record one transfer. Bumps the generation so cached centrality is recomputed."""
        if self._graph.has_edge(sender, recipient):
            self._graph[sender][recipient][AMOUNTS_ATTR].append(float(amount))
        else:
            self._graph.add_edge(sender, recipient, **{AMOUNTS_ATTR: [float(amount)]})
        self._generation += 1

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def generation(self) -> int:
        return self._generation

    def __contains__(self, address: object) -> bool:
        return address in self._graph

    def __len__(self) -> int:
        return self._graph.number_of_nodes()

    def nodes(self) -> list[str]:
        return list(self._graph)

    def neighbors(self, address: str) -> list[str]:
        """Recipients of address, in first-transfer order."""
        if address not in self._graph:
            return []
        return list(self._graph.successors(address))

    def predecessors(self, address: str) -> list[str]:
        if address not in self._graph:
            return []
        return list(self._graph.predecessors(address))

    def has_edge(self, sender: str, recipient: str) -> bool:
        return self._graph.has_edge(sender, recipient)

    def edge_amounts(self, sender: str, recipient: str) -> list[float]:
        if not self._graph.has_edge(sender, recipient):
            return []
        return list(self._graph[sender][recipient][AMOUNTS_ATTR])

    def edge_count(self) -> int:
        return self._graph.number_of_edges()

    # ------------------------------------------------------------------
    # Clusters
    # ------------------------------------------------------------------

    def find_clusters(self, max_depth: int = DEFAULT_CLUSTER_DEPTH) -> list[set[str]]:
        """
        Depth-bounded DFS along directed edges from every unvisited sender.

        A node reached beyond max_depth is left unvisited and may root a later
        cluster. Only clusters with more than one member are returned.
        """
        visited: set[str] = set()
        unvisited = nx.subgraph_view(self._graph, filter_node=lambda n: n not in visited)
        clusters: list[set[str]] = []
        for root in self._graph:
            if root in visited or self._graph.out_degree(root) == 0:
                continue
            cluster = set(nx.dfs_preorder_nodes(unvisited, root, depth_limit=max_depth))
            visited |= cluster
            if len(cluster) > 1:
                clusters.append(cluster)
        logger.debug("address_graph_clusters", clusters=len(clusters), nodes=len(self._graph), max_depth=max_depth)
        return clusters

    def cluster_of(self, address: str, max_depth: int = DEFAULT_CLUSTER_DEPTH) -> set[str]:
        for cluster in self.find_clusters(max_depth):
            if address in cluster:
                return cluster
        return {address} if address in self._graph else set()

    # ------------------------------------------------------------------
    # Centrality
    # ------------------------------------------------------------------

    def centrality(self, address: str) -> float:
        """Direct recipients plus half the recipients' own out-degree."""
        if address not in self._graph:
            return 0.0
        recipients = list(self._graph.successors(address))
        second_degree = sum(self._graph.out_degree(r) for r in recipients)
        return len(recipients) + SECOND_DEGREE_WEIGHT * second_degree

    def betweenness_centrality(self, address: str) -> float:
        """
        Normalized betweenness of address, cached until the next add_edge.

        Exact (all equal-length shortest paths counted) when the graph has at
        most the cutover number of nodes; otherwise the fraction of neighbour
        pairs with no direct edge between them.
        """
        if address not in self._graph:
            return 0.0
        cached = self._betweenness_cache.get(address)
        if cached is not None and cached[0] == self._generation:
            return cached[1]
        if len(self._graph) <= self._betweenness_cutover:
            value = self._exact_betweenness().get(address, 0.0)
        else:
            value = self._approximate_betweenness(address)
        self._betweenness_cache[address] = (self._generation, value)
        return value

    def _exact_betweenness(self) -> dict[str, float]:
        """
        Betweenness of every node over pairs (s, t) with s inserted before t,
        paths following edge direction, normalized by (n-1)(n-2)/2.
        """
        if self._exact_cache is not None and self._exact_cache[0] == self._generation:
            return self._exact_cache[1]
        nodes = list(self._graph)
        n = len(nodes)
        totals = dict.fromkeys(nodes, 0.0)
        if n >= 3:
            for i, source in enumerate(nodes[:-1]):
                partial = nx.betweenness_centrality_subset(
                    self._graph, sources=[source], targets=nodes[i + 1:], normalized=False
                )
                for node, value in partial.items():
                    totals[node] += value
            scale = (n - 1) * (n - 2) / 2
            totals = {node: value / scale for node, value in totals.items()}
        self._exact_cache = (self._generation, totals)
        return totals

    def _approximate_betweenness(self, address: str) -> float:
        neighbours = list(dict.fromkeys(nx.all_neighbors(self._graph, address)))
        degree = len(neighbours)
        if degree < 2:
            return 0.0
        unconnected = 0
        for i, first in enumerate(neighbours):
            for second in neighbours[i + 1:]:
                if not self.has_edge(first, second) and not self.has_edge(second, first):
                    unconnected += 1
        return unconnected / (degree * (degree - 1) / 2)

    # ------------------------------------------------------------------
    # Funding and flow patterns
    # ------------------------------------------------------------------

    def common_funding_sources(self, addresses: Iterable[str]) -> dict[str, list[str]]:
        """Senders that transferred to at least two of the given addresses."""
        members = list(dict.fromkeys(addresses))
        sources: dict[str, list[str]] = {}
        for sender in self._graph:
            targets = self._graph.succ[sender]
            funded = [a for a in members if a in targets]
            if len(funded) >= 2:
                sources[sender] = funded
        return sources

    def recipient_overlap(self, address: str) -> float:
        """Fraction of address's recipients that also received from another sender."""
        recipients = self.neighbors(address)
        if not recipients:
            return 0.0
        shared = sum(1 for r in recipients if self._graph.in_degree(r) > 1)
        return shared / len(recipients)

    def transaction_patterns(self, address: str) -> TransactionPatterns:
        if address in self._graph:
            outgoing = [amt for _, _, amounts in self._graph.out_edges(address, data=AMOUNTS_ATTR) for amt in amounts]
            incoming = [amt for _, _, amounts in self._graph.in_edges(address, data=AMOUNTS_ATTR) for amt in amounts]
        else:
            outgoing, incoming = [], []

        regularity = 0.0
        if len(outgoing) > 1:
            mean = statistics.fmean(outgoing)
            cv = statistics.pstdev(outgoing) / mean if mean > 0 else 0.0
            regularity = max(0.0, min(1.0, 1 - cv / (1 + cv)))

        return TransactionPatterns(
            outgoing_count=len(outgoing),
            incoming_count=len(incoming),
            unique_targets=len(self.neighbors(address)),
            unique_sources=len(self.predecessors(address)),
            average_outgoing_amount=statistics.fmean(outgoing) if outgoing else 0.0,
            average_incoming_amount=statistics.fmean(incoming) if incoming else 0.0,
            pattern_regularity=regularity,
        )

    def network_pattern(self, address: str) -> NetworkPattern:
        return NetworkPattern(
            cluster_size=len(self.cluster_of(address)),
            centrality_score=self.centrality(address),
            betweenness=self.betweenness_centrality(address),
            recipient_overlap=self.recipient_overlap(address),
        )
