"""Tool Registry: business tools callable from tool_execution steps."""

import importlib
import inspect
from typing import Any, Callable, Dict, Optional
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..models.core import ToolInvocationResult
from ..storage.models import ToolRegistryModel
from .exceptions import ToolRegistryError
from .interfaces import ToolInvoker
from .logging import get_logger

logger = get_logger(__name__)


class ToolRegistry(ToolInvoker):
    """Registry of Python callables addressable by tool slug.

    A tool is called as ``tool(parameters, actor_id)`` and returns its result
    data, or a ``ToolInvocationResult`` when it wants to report a failure
    itself. Registrations are persisted by module and function name when a
    session factory is given, so tools resolve lazily after a restart.
    """

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        """Initialize the tool registry.

        Args:
            session_factory: Optional session factory. Without it registrations live in memory only.
        """
        self._session_factory = session_factory
        self._memory_cache: Dict[str, Callable] = {}
        self._descriptions: Dict[str, str] = {}

    @staticmethod
    def _normalize(slug: str) -> str:
        if not slug or not slug.strip():
            raise ToolRegistryError("Tool slug cannot be empty")
        return slug.strip()

    def register_tool(self, slug: str, function: Callable, description: str = "") -> None:
        """Register a Python function as a tool.

        Args:
            slug: Unique identifier of the tool
            function: Callable accepting ``(parameters, actor_id)``
            description: Optional description of the tool's purpose

        Raises:
            ToolRegistryError: If the slug is taken or the function is invalid
        """
        slug = self._normalize(slug)

        if not callable(function):
            raise ToolRegistryError(f"Tool '{slug}' must be a callable function", tool_slug=slug, operation="register")

        try:
            sig = inspect.signature(function)
            if len(sig.parameters) < 2:
                logger.warning(f"Tool '{slug}' accepts fewer than two parameters; it will be called as tool(parameters, actor_id)")
        except (ValueError, TypeError) as e:
            raise ToolRegistryError(f"Cannot inspect function signature for tool '{slug}': {e}", tool_slug=slug)

        if slug in self._memory_cache:
            raise ToolRegistryError(f"Tool '{slug}' is already registered", tool_slug=slug, operation="register")

        if self._session_factory is not None:
            self._persist_registration(slug, function, description)

        self._memory_cache[slug] = function
        self._descriptions[slug] = description.strip() if description else ""
        logger.info(f"Registered tool '{slug}' from {function.__module__}.{function.__name__}")

    def _persist_registration(self, slug: str, function: Callable, description: str) -> None:
        function_module = getattr(function, "__module__", None)
        function_name = getattr(function, "__name__", None)
        if not function_module or not function_name:
            raise ToolRegistryError(f"Cannot determine module or name for tool '{slug}'", tool_slug=slug)

        session = self._session_factory()
        try:
            if session.get(ToolRegistryModel, slug):
                raise ToolRegistryError(f"Tool '{slug}' is already registered", tool_slug=slug, operation="register")

            session.add(ToolRegistryModel(
                slug=slug,
                description=description.strip() if description else "",
                function_module=function_module,
                function_name=function_name
            ))
            session.commit()
        except ToolRegistryError:
            session.rollback()
            raise
        except IntegrityError:
            session.rollback()
            raise ToolRegistryError(f"Tool '{slug}' is already registered", tool_slug=slug, operation="register")
        except SQLAlchemyError as e:
            session.rollback()
            raise ToolRegistryError(f"Failed to register tool '{slug}': {e}", tool_slug=slug, operation="register")
        finally:
            session.close()

    def get_tool(self, slug: str) -> Callable:
        """Return the callable registered under ``slug``, loading it from storage if needed.

        Raises:
            ToolRegistryError: If the tool is unknown or cannot be loaded
        """
        slug = self._normalize(slug)

        if slug in self._memory_cache:
            return self._memory_cache[slug]

        if self._session_factory is None:
            raise ToolRegistryError(f"Tool '{slug}' is not registered", tool_slug=slug, operation="get")

        session = self._session_factory()
        try:
            tool_model = session.get(ToolRegistryModel, slug)
            if not tool_model:
                raise ToolRegistryError(f"Tool '{slug}' is not registered", tool_slug=slug, operation="get")

            try:
                module = importlib.import_module(tool_model.function_module)
                function = getattr(module, tool_model.function_name)
            except ImportError as e:
                raise ToolRegistryError(f"Cannot import module for tool '{slug}': {e}", tool_slug=slug)
            except AttributeError as e:
                raise ToolRegistryError(f"Function not found in module for tool '{slug}': {e}", tool_slug=slug)

            if not callable(function):
                raise ToolRegistryError(f"Tool '{slug}' is not callable", tool_slug=slug)

            self._memory_cache[slug] = function
            self._descriptions[slug] = tool_model.description or ""
            logger.debug(f"Loaded tool '{slug}' from {tool_model.function_module}.{tool_model.function_name}")
            return function
        except SQLAlchemyError as e:
            raise ToolRegistryError(f"Failed to retrieve tool '{slug}': {e}", tool_slug=slug, operation="get")
        finally:
            session.close()

    def tool_exists(self, slug: str) -> bool:
        """Check whether a tool is registered."""
        if not slug or not slug.strip():
            return False
        slug = slug.strip()

        if slug in self._memory_cache:
            return True
        if self._session_factory is None:
            return False

        session = self._session_factory()
        try:
            return session.get(ToolRegistryModel, slug) is not None
        except SQLAlchemyError as e:
            logger.warning(f"Could not check tool '{slug}': {e}")
            return False
        finally:
            session.close()

    def list_tools(self) -> Dict[str, str]:
        """Map every registered tool slug to its description."""
        tools = dict(self._descriptions)
        if self._session_factory is None:
            return tools

        session = self._session_factory()
        try:
            for tool in session.query(ToolRegistryModel).all():
                tools[tool.slug] = tool.description or ""
            return tools
        except SQLAlchemyError as e:
            raise ToolRegistryError(f"Failed to list tools: {e}", operation="list")
        finally:
            session.close()

    def unregister_tool(self, slug: str) -> bool:
        """Remove a tool. Returns False if it was not registered."""
        slug = self._normalize(slug)
        removed = self._memory_cache.pop(slug, None) is not None
        self._descriptions.pop(slug, None)

        if self._session_factory is not None:
            session = self._session_factory()
            try:
                tool_model = session.get(ToolRegistryModel, slug)
                if tool_model:
                    session.delete(tool_model)
                    session.commit()
                    removed = True
            except SQLAlchemyError as e:
                session.rollback()
                raise ToolRegistryError(f"Failed to unregister tool '{slug}': {e}", tool_slug=slug, operation="unregister")
            finally:
                session.close()

        if removed:
            logger.info(f"Unregistered tool '{slug}'")
        return removed

    def clear_cache(self) -> None:
        """Clear the in-memory function cache."""
        self._memory_cache.clear()
        logger.debug("Tool registry memory cache cleared")

    def invoke(self, tool_slug: str, parameters: Dict[str, Any], actor_id: str) -> ToolInvocationResult:
        """Call a tool and report the outcome; tool exceptions become a failed result."""
        try:
            tool_function = self.get_tool(tool_slug)
        except ToolRegistryError as e:
            logger.error(e.message)
            return ToolInvocationResult(success=False, error=e.message)

        logger.info(f"Invoking tool '{tool_slug}' for {actor_id}")
        try:
            result = tool_function(dict(parameters), actor_id)
        except Exception as e:
            logger.error(f"Tool '{tool_slug}' raised {type(e).__name__}: {e}", exc_info=True)
            return ToolInvocationResult(success=False, error=str(e) or f"Tool '{tool_slug}' failed")

        if isinstance(result, ToolInvocationResult):
            return result
        return ToolInvocationResult(success=True, data=result)
