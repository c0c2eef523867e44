"""Dependency analysis and visualization for expanded programs."""
from __future__ import annotations

from pathlib import Path

import networkx as nx

from ..constants import DEPENDENCY_COLORS
from .core import Program, _stable_id


def dependency_graph(context) -> nx.DiGraph:
    """Graph of expanded identities, with edges from dependency to dependent."""

    graph = nx.DiGraph()
    for identity, kind in context.kinds.items():
        graph.add_node(identity, name=context.name_of(identity), kind=kind)
    for dependency, dependent in context.dependencies:
        graph.add_edge(dependency, dependent)
    return graph


def program_graph(program: Program) -> nx.DiGraph:
    """Graph of statement indices, with an edge from the statement assigning a
    binding to every statement that reads it."""

    graph = nx.DiGraph()
    bindings = program.bindings
    for idx, statement in enumerate(program):
        graph.add_node(idx, binding=statement.binding)
        for name in statement.references():
            if name in bindings and bindings[name] != idx:
                graph.add_edge(bindings[name], idx, name=name)
    return graph


def check_program_order(program: Program, errors=None) -> list[str]:
    """Report every binding that is read before the statement assigning it."""

    if errors is None:
        errors = []
    graph = program_graph(program)
    for source, target, data in sorted(graph.edges(data=True)):
        if source > target:
            errors.append(
                f"Statement {target} reads {data['name']!r} before statement {source} assigns it"
            )
    return errors


def _roles(graph: nx.DiGraph) -> dict[str, str]:
    roles = {}
    for node, data in graph.nodes(data=True):
        if data.get("kind") == "observer":
            roles[node] = "observer"
        elif graph.out_degree(node) > 1:
            roles[node] = "shared"
        elif graph.out_degree(node) == 0:
            roles[node] = "root"
        else:
            roles[node] = "upstream"
    return roles


def explain_binding(context, name):
    """Explain which captures a binding was built from."""

    graph = dependency_graph(context)
    identity = next(
        (ident for ident, data in graph.nodes(data=True) if data.get("name") == name),
        None,
    )
    if identity is None and name in graph:
        identity = name
    if identity is None:
        return {"found": False, "identity": None, "upstream": [], "lines": []}

    upstream_nodes = nx.ancestors(graph, identity)
    order = [node for node in nx.topological_sort(graph) if node in upstream_nodes]
    lines = [f"{graph.nodes[identity].get('name') or '-'} ← {identity}"]
    for node in order:
        deps = sorted(graph.predecessors(node))
        label = graph.nodes[node].get("name") or "-"
        lines.append(
            f"  uses {label} ({node})" + (f" ← {', '.join(deps)}" if deps else "")
        )
    return {
        "found": True,
        "identity": identity,
        "upstream": [graph.nodes[node].get("name") or node for node in order],
        "lines": lines,
    }


def dependency_dot(context):
    """Build a pydot graph of a context's dependencies."""

    import pydot

    graph = dependency_graph(context)
    roles = _roles(graph)
    dot = pydot.Dot(
        "metacode_dependencies",
        graph_type="digraph",
        rankdir="LR",
        fontname="Helvetica",
    )
    for node, data in graph.nodes(data=True):
        label = f"{data.get('name') or '(no binding)'}\\n{node}"
        dot.add_node(
            pydot.Node(
                f"n_{_stable_id(node)}",
                label=label,
                shape="box",
                style="filled",
                fillcolor=DEPENDENCY_COLORS[roles[node]],
                color="#34495e",
                fontname="Helvetica",
            )
        )
    for source, target in graph.edges():
        dot.add_edge(
            pydot.Edge(
                f"n_{_stable_id(source)}",
                f"n_{_stable_id(target)}",
                color="#7f8c8d",
                arrowsize="0.8",
            )
        )
    return dot


def export_graphviz(context, output_path):
    """Export the dependency graph; ``.dot`` is written raw, other suffixes
    are rendered by Graphviz."""

    dot = dependency_dot(context)
    output_path = Path(output_path)
    if output_path.parent and not output_path.parent.exists():
        output_path.parent.mkdir(parents=True, exist_ok=True)

    suffix = output_path.suffix.lstrip(".").lower() or "dot"
    if suffix in ("dot", "gv"):
        dot.write(str(output_path), format="raw")
    else:
        dot.write(str(output_path), format=suffix)
    print(f"  ✓ Dependency graph exported → {output_path}")
    return output_path


def visualize_dependencies(context, output_path=None):
    """Draw the dependency graph with matplotlib; show it or save it."""

    from matplotlib.figure import Figure

    graph = dependency_graph(context)
    roles = _roles(graph)
    labels = {node: data.get("name") or node for node, data in graph.nodes(data=True)}
    colors = [DEPENDENCY_COLORS[roles[node]] for node in graph.nodes]

    if output_path is None:  # pragma: no cover - interactive display
        import matplotlib.pyplot as plt

        fig = plt.figure()
    else:
        fig = Figure()
    ax = fig.add_subplot()
    positions = nx.spring_layout(graph, seed=42)
    nx.draw(
        graph,
        positions,
        ax=ax,
        labels=labels,
        node_color=colors,
        node_size=1200,
        font_size=8,
        arrows=True,
    )
    ax.set_title("metacode dependencies")
    fig.tight_layout()
    if output_path is None:  # pragma: no cover - interactive display
        plt.show()
        return None
    fig.savefig(str(output_path))
    return Path(output_path)


__all__ = [
    "check_program_order",
    "dependency_dot",
    "dependency_graph",
    "explain_binding",
    "export_graphviz",
    "program_graph",
    "visualize_dependencies",
]
