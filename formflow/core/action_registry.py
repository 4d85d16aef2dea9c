"""Registry of delegates invoked by action and approval nodes."""

import inspect
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

from ..models.core import ActionContext, ActionResult
from .exceptions import ActionRegistryError
from .logging import get_logger

logger = get_logger(__name__)

ActionDelegate = Callable[[ActionContext], Union[ActionResult, Dict[str, Any], None]]


class DelegateKind(str, Enum):
    """Node families that call into the registry."""
    ACTION = "action"
    APPROVAL = "approval"


class ActionRegistry:
    """In-memory catalog of business actions keyed by kind and type name.

    Action nodes look delegates up by their ``actionType`` config key and
    approval nodes by ``approvalAction``.
    """

    def __init__(self, include_builtins: bool = True):
        """Initialize the registry.

        Args:
            include_builtins: Register the ``log_event`` action and the
                ``auto_approve`` approval
        """
        self._delegates: Dict[DelegateKind, Dict[str, ActionDelegate]] = {
            DelegateKind.ACTION: {},
            DelegateKind.APPROVAL: {},
        }
        self._descriptions: Dict[DelegateKind, Dict[str, str]] = {
            DelegateKind.ACTION: {},
            DelegateKind.APPROVAL: {},
        }
        if include_builtins:
            self.register_action("log_event", log_event, "Write the node's message to the engine log")
            self.register_approval("auto_approve", auto_approve, "Approve without human input")

    def register(
        self,
        kind: DelegateKind,
        name: str,
        delegate: ActionDelegate,
        description: str = "",
        replace: bool = False
    ) -> None:
        """Register a delegate.

        Args:
            kind: Whether the delegate serves action or approval nodes
            name: Type name referenced from node configs
            delegate: Callable taking an ActionContext
            description: Optional description
            replace: Allow overwriting an existing registration

        Raises:
            ActionRegistryError: If the name is empty or taken, or the delegate is not callable
        """
        if not name or not name.strip():
            raise ActionRegistryError("Action type cannot be empty", operation="register")
        name = name.strip()

        if not callable(delegate):
            raise ActionRegistryError(
                f"Delegate for '{name}' must be callable",
                action_type=name,
                operation="register"
            )

        try:
            if len(inspect.signature(delegate).parameters) == 0:
                logger.warning(f"Delegate '{name}' takes no parameters and cannot see its ActionContext")
        except (ValueError, TypeError) as e:
            raise ActionRegistryError(
                f"Cannot inspect delegate signature for '{name}': {e}",
                action_type=name,
                operation="register"
            )

        if name in self._delegates[kind] and not replace:
            raise ActionRegistryError(
                f"{kind.value.capitalize()} '{name}' is already registered",
                action_type=name,
                operation="register"
            )

        self._delegates[kind][name] = delegate
        self._descriptions[kind][name] = description.strip() if description else ""
        logger.info(f"Registered {kind.value} delegate '{name}'")

    def register_action(self, name: str, delegate: ActionDelegate, description: str = "", replace: bool = False) -> None:
        self.register(DelegateKind.ACTION, name, delegate, description, replace)

    def register_approval(self, name: str, delegate: ActionDelegate, description: str = "", replace: bool = False) -> None:
        self.register(DelegateKind.APPROVAL, name, delegate, description, replace)

    def unregister(self, kind: DelegateKind, name: str) -> bool:
        self._descriptions[kind].pop(name, None)
        return self._delegates[kind].pop(name, None) is not None

    def has(self, kind: DelegateKind, name: Optional[str]) -> bool:
        return bool(name) and name in self._delegates[kind]

    def get(self, kind: DelegateKind, name: str) -> ActionDelegate:
        """
        Raises:
            ActionRegistryError: If nothing is registered under ``name``
        """
        delegate = self._delegates[kind].get(name)
        if delegate is None:
            raise ActionRegistryError(
                f"{kind.value.capitalize()} '{name}' not found",
                action_type=name,
                operation="get"
            )
        return delegate

    def list_delegates(self, kind: Optional[DelegateKind] = None) -> Dict[str, str]:
        """Registered names with their descriptions, prefixed by kind when listing both."""
        if kind is not None:
            return dict(self._descriptions[kind])
        return {
            f"{registered_kind.value}:{name}": description
            for registered_kind, names in self._descriptions.items()
            for name, description in names.items()
        }

    def execute(self, kind: DelegateKind, name: Optional[str], context: ActionContext) -> ActionResult:
        """
        Run a delegate and normalize its return value.

        Unknown names and delegate exceptions become failed results. A plain
        dict return is accepted: with a ``success`` key it is read as an
        ActionResult, otherwise it is the output of a successful call.
        """
        if not self.has(kind, name):
            label = "action type" if kind is DelegateKind.ACTION else "approval action"
            logger.error(f"Unknown {label}: {name}")
            return ActionResult(success=False, error=f"Unknown {label}: {name}")

        try:
            returned = self._delegates[kind][name](context)
        except Exception as e:
            logger.error(f"{kind.value.capitalize()} '{name}' failed on node {context.node_id}: {str(e)}")
            return ActionResult(success=False, error=str(e) or f"{kind.value.capitalize()} execution failed")

        if returned is None:
            return ActionResult(success=True)
        if isinstance(returned, ActionResult):
            return returned
        if isinstance(returned, dict):
            if "success" in returned:
                return ActionResult.model_validate(returned)
            return ActionResult(success=True, output=returned)

        logger.warning(f"{kind.value.capitalize()} '{name}' returned unsupported type {type(returned).__name__}")
        return ActionResult(success=True, output={"result": str(returned)})


def log_event(context: ActionContext) -> ActionResult:
    message = context.config.get("message") or f"Workflow event from node {context.node_id}"
    logger.info(f"[{context.execution_id}] {message}")
    return ActionResult(success=True, output={"action": "log_event", "executed": True, "message": message})


def auto_approve(context: ActionContext) -> ActionResult:
    logger.info(f"Auto-approving submission {context.submission_id} for node {context.node_id}")
    return ActionResult(
        success=True,
        output={"approval": "auto_approve", "executed": True, "approved": True}
    )
