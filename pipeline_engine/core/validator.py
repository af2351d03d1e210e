"""Pre-execution validation of pipeline workflows."""

from dataclasses import dataclass
from typing import List, Optional, Set, Tuple

from ..models.core import ValidationReport, Workflow
from .compatibility import is_compatible
from .exceptions import CycleDetectedError, ValidationError
from .graph import WorkflowGraph
from .logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ValidatedGraph:
    """Handle to a workflow that passed validation."""
    workflow: Workflow
    graph: WorkflowGraph
    order: Tuple[str, ...]

    @property
    def workflow_id(self) -> str:
        return self.workflow.id


class GraphValidator:
    """Structural and type checks; pure, performs no I/O."""

    def validate(self, workflow: Workflow) -> ValidatedGraph:
        """
        Validate a workflow for execution.

        Args:
            workflow: The workflow to validate

        Returns:
            ValidatedGraph: graph handle with a fixed topological order

        Raises:
            MalformedGraphError: if the adjacency index cannot be built
            CycleDetectedError: if the graph has a cycle; also lists any other
                violation found
            ValidationError: listing every other violation found
        """
        logger.debug(f"Validating workflow: {workflow.id}")
        graph = WorkflowGraph.build(workflow)

        violations: List[str] = []
        cycle_error: Optional[CycleDetectedError] = None
        order: Tuple[str, ...] = ()
        try:
            order = tuple(graph.topological_order())
        except CycleDetectedError as e:
            cycle_error = e
            violations.extend(e.violations)

        violations.extend(self._check_node_types(graph))
        violations.extend(self._check_edges(graph))

        if cycle_error is not None:
            raise CycleDetectedError(
                cycle_error.message,
                cycle_nodes=cycle_error.cycle_nodes,
                violations=violations,
                workflow_id=workflow.id
            )
        if violations:
            logger.info(f"Workflow {workflow.id} failed validation with {len(violations)} violation(s)")
            raise ValidationError(
                f"Workflow '{workflow.id}' failed validation: {'; '.join(violations)}",
                violations=violations,
                workflow_id=workflow.id
            )

        return ValidatedGraph(workflow=workflow, graph=graph, order=order)

    def check(self, workflow: Workflow) -> ValidationReport:
        """Validate without raising; adds warnings useful to authors."""
        try:
            validated = self.validate(workflow)
        except CycleDetectedError as e:
            return ValidationReport(is_valid=False, errors=e.violations, cycle_nodes=sorted(e.cycle_nodes))
        except ValidationError as e:
            return ValidationReport(is_valid=False, errors=e.violations or [e.message])
        return ValidationReport(is_valid=True, warnings=self._warnings(validated.graph))

    def _check_node_types(self, graph: WorkflowGraph) -> List[str]:
        violations = []
        has_input = has_output = False
        for node in graph.nodes():
            node_type = node.node_type
            if node_type is None:
                violations.append(f"Node '{node.id}' has unknown type '{node.type}'")
                continue
            has_input = has_input or node_type.is_input
            has_output = has_output or node_type.is_output
        if not has_input:
            violations.append("Workflow has no input node (input_text or input_media)")
        if not has_output:
            violations.append("Workflow has no output node (output_save or output_download)")
        return violations

    def _check_edges(self, graph: WorkflowGraph) -> List[str]:
        violations = []
        for source_id in graph.node_ids:
            source = graph.node(source_id)
            for target_id in graph.successors(source_id):
                target = graph.node(target_id)
                if not is_compatible(source.type, target.type):
                    violations.append(
                        f"Node '{target_id}' ({target.type}) cannot consume output of "
                        f"'{source_id}' ({source.type})"
                    )
        return violations

    def _warnings(self, graph: WorkflowGraph) -> List[str]:
        warnings = []
        outputs: Set[str] = set(graph.output_nodes())
        isolated = sorted(
            node_id for node_id in graph.node_ids
            if not graph.predecessors(node_id) and not graph.successors(node_id)
        )
        if isolated:
            warnings.append(f"Isolated nodes detected: {', '.join(isolated)}")

        dead_ends = sorted(
            node_id for node_id in graph.node_ids
            if node_id not in outputs and node_id not in isolated
            and not outputs.intersection(graph.descendants(node_id))
        )
        if dead_ends:
            warnings.append(f"Nodes whose results never reach an output: {', '.join(dead_ends)}")
        return warnings


def validate_workflow(workflow: Workflow) -> ValidatedGraph:
    """Convenience wrapper around GraphValidator().validate."""
    return GraphValidator().validate(workflow)
