"""Resource graph builder: declarations plus references to a validated DAG."""

from typing import Any, Dict, Iterable, List, Optional, Set

from landform.config.models import ResourceDeclaration
from landform.orchestrator.dependency_graph import DependencyGraph
from landform.orchestrator.expressions import Reference, find_references
from landform.providers.base import ResourceSchema
from landform.providers.registry import ProviderRegistry
from landform.utils.errors import ConfigurationError, ErrorContext, UnresolvedReferenceError
from landform.utils.logging import get_logger

logger = get_logger(__name__)


class ResourceGraph:
    """Declared resources and the dependencies between them.

    Node keys are resource addresses; payloads are the declarations. An
    edge A -> B means A references B or lists it in ``depends_on``.
    """

    def __init__(
        self,
        graph: DependencyGraph,
        variables: Dict[str, Any],
        schemas: Dict[str, ResourceSchema],
        references: Dict[str, List[Reference]]
    ):
        self.graph = graph
        self.variables = dict(variables)
        self.schemas = schemas
        self.references = references

    def __contains__(self, address: str) -> bool:
        return address in self.graph

    def __len__(self) -> int:
        return len(self.graph)

    def addresses(self) -> List[str]:
        """Addresses in declaration order."""
        return self.graph.keys()

    def get(self, address: str) -> Optional[ResourceDeclaration]:
        return self.graph.get_payload(address)

    def order_of(self, address: str) -> int:
        return self.graph.get_node(address).order

    def schema_for(self, address: str) -> ResourceSchema:
        return self.schemas.get(self.get(address).type, ResourceSchema())

    def dependencies(self, address: str) -> List[str]:
        """Direct dependencies, in declaration order."""
        return sorted(self.graph.get_dependencies(address), key=self.order_of)

    def dependents(self, address: str) -> List[str]:
        return sorted(self.graph.get_dependents(address), key=self.order_of)

    def topological_order(self) -> List[str]:
        return self.graph.topological_sort()


class ResourceGraphBuilder:
    """Builds a ResourceGraph from resource declarations."""

    def __init__(self, registry: Optional[ProviderRegistry] = None):
        """Initialize the builder.

        Args:
            registry: Provider registry used to look up each type's computed
                attributes. Without one, only ``id`` counts as computed.
        """
        self.registry = registry
        self.logger = get_logger(__name__)

    def build(
        self,
        declarations: Iterable[ResourceDeclaration],
        variables: Optional[Dict[str, Any]] = None
    ) -> ResourceGraph:
        """Build and validate the resource graph.

        Args:
            declarations: Resource declarations in declaration order
            variables: Variable values available as ``var.NAME``

        Returns:
            ResourceGraph with one node per declaration

        Raises:
            ConfigurationError: On duplicate addresses or malformed expressions
            UnresolvedReferenceError: On references to missing resources,
                attributes or variables
            CycleError: If the references form a cycle
        """
        variables = variables or {}
        graph = DependencyGraph()
        schemas: Dict[str, ResourceSchema] = {}

        for order, declaration in enumerate(declarations):
            address = declaration.address
            if address in graph:
                raise ConfigurationError(
                    f"Resource '{address}' is declared more than once",
                    context=ErrorContext(address=address)
                )
            graph.add_node(address, declaration, order=order)
            if declaration.type not in schemas:
                schemas[declaration.type] = self._schema(declaration.type)

        references: Dict[str, List[Reference]] = {}
        for node in graph:
            declaration: ResourceDeclaration = node.payload
            references[node.key] = self._add_edges(graph, declaration, variables, schemas)

        graph.validate()

        self.logger.debug(
            f"Built resource graph with {len(graph)} resources and {len(graph.edges())} edges"
        )
        return ResourceGraph(graph, variables, schemas, references)

    def _schema(self, resource_type: str) -> ResourceSchema:
        if self.registry is None:
            return ResourceSchema()
        return self.registry.schema_for(resource_type)

    def _add_edges(
        self,
        graph: DependencyGraph,
        declaration: ResourceDeclaration,
        variables: Dict[str, Any],
        schemas: Dict[str, ResourceSchema]
    ) -> List[Reference]:
        address = declaration.address
        refs = find_references(declaration.attributes)
        seen: Set[str] = set()

        for ref in refs:
            if ref.is_variable:
                if ref.variable not in variables:
                    raise UnresolvedReferenceError(
                        f"Resource '{address}' references undefined variable '{ref.variable}'",
                        reference=str(ref),
                        context=ErrorContext(address=address),
                        suggestions=[
                            f"Define '{ref.variable}' under 'variables', with "
                            f"LANDFORM_VAR_{ref.variable} or --var {ref.variable}=VALUE"
                        ]
                    )
                continue

            target = graph.get_payload(ref.address)
            if target is None:
                raise UnresolvedReferenceError(
                    f"Resource '{address}' references undeclared resource '{ref.address}'",
                    reference=str(ref),
                    context=ErrorContext(address=address)
                )

            schema = schemas[target.type]
            if ref.attribute not in target.attributes and ref.attribute not in schema.computed_attributes:
                known = sorted(set(target.attributes) | schema.computed_attributes)
                raise UnresolvedReferenceError(
                    f"Resource '{address}' references unknown attribute '{ref}'",
                    reference=str(ref),
                    context=ErrorContext(address=address),
                    suggestions=[f"Attributes of {ref.address}: {', '.join(known)}"]
                )

            if ref.address not in seen:
                seen.add(ref.address)
                graph.add_edge(address, ref.address)

        for dependency in declaration.depends_on:
            if dependency not in graph:
                raise UnresolvedReferenceError(
                    f"Resource '{address}' depends on undeclared resource '{dependency}'",
                    reference=dependency,
                    context=ErrorContext(address=address)
                )
            graph.add_edge(address, dependency)

        return refs
