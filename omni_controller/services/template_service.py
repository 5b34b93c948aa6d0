"""TemplateService: snapshot projects into templates and copy templates into projects."""

from __future__ import annotations

from datetime import datetime

from ..errors import BadRequestError, NotFoundError
from ..logging_utils import get_logger
from ..naming import THREAD_PREFIX, project_id_to_thread_name, thread_name_to_project_id
from ..resources import (
    TEMPLATE_SNAPSHOT_ANNOTATION,
    ProjectMCPServer,
    Thread,
    ThreadShare,
    ThreadSpec,
)
from ..store import ResourceStore

logger = get_logger(__name__)

SHARE_KIND = "ThreadShare"
TEMPLATE_KIND = "ProjectTemplate"

_MAX_PARENT_DEPTH = 32


def snapshot_revision(now: datetime) -> str:
    """RFC 3339 UTC timestamp, second precision."""
    return now.strftime("%Y-%m-%dT%H:%M:%SZ")


class TemplateService:
    def __init__(self, store: ResourceStore):
        self._store = store

    async def _root_project(self, namespace: str, project_id: str) -> Thread:
        thread = await self._store.get(Thread, namespace, project_id_to_thread_name(project_id))
        for _ in range(_MAX_PARENT_DEPTH):
            if not thread.spec.parent_thread_name:
                break
            thread = await self._store.get(Thread, namespace, thread.spec.parent_thread_name)
        else:
            raise BadRequestError(f"project {project_id} is nested too deeply")

        if not thread.spec.project or thread.spec.template:
            raise BadRequestError(f"thread {thread.name} is not a project")
        return thread

    async def _template_of(self, namespace: str, project: Thread) -> Thread | None:
        found = await self._store.list(
            Thread,
            namespace=namespace,
            fields={"spec.template": True, "spec.source_thread_name": project.name},
            limit=1,
        )
        return found[0] if found else None

    async def _share_of(self, template: Thread) -> ThreadShare | None:
        found = await self._store.list(
            ThreadShare,
            namespace=template.namespace,
            fields={"spec.template": True, "spec.project_thread_name": template.name},
            limit=1,
        )
        return found[0] if found else None

    async def _view(self, template: Thread, share: ThreadShare | None) -> dict:
        bindings = await self._store.list(
            ProjectMCPServer, namespace=template.namespace, fields={"spec.thread_name": template.name}
        )
        return {
            "id": template.name,
            "project_id": thread_name_to_project_id(template.spec.source_thread_name),
            "agent_name": template.spec.agent_name,
            "manifest": template.spec.manifest.model_dump(mode="json"),
            "snapshot_revision": template.annotations.get(TEMPLATE_SNAPSHOT_ANNOTATION, ""),
            "public_id": share.spec.public_id if share is not None else "",
            "mcp_servers": [b.spec.manifest.mcp_id for b in bindings],
            "ready": template.status.created,
            "created_at": template.metadata.creation_timestamp.isoformat()
            if template.metadata.creation_timestamp
            else None,
        }

    async def create_project_template(self, namespace: str, project_id: str) -> dict:
        """Snapshot a project into its template, refreshing the existing one if any."""
        project = await self._root_project(namespace, project_id)
        revision = snapshot_revision(self._store.now())

        template = await self._template_of(namespace, project)
        if template is not None:
            template.spec.manifest = project.spec.manifest.model_copy(deep=True)
            template.spec.agent_name = project.spec.agent_name
            template.metadata.annotations[TEMPLATE_SNAPSHOT_ANNOTATION] = revision
            await self._store.update(template)

            # the controller re-copies tools and tasks from the project
            template.status.copied_tools = False
            template.status.copied_tasks = False
            await self._store.update_status(template)
            logger.info("template snapshot refreshed", data={"template": template.name, "revision": revision})
            return await self._view(template, await self._share_of(template))

        template = Thread.new(
            namespace=namespace,
            generate_name=THREAD_PREFIX,
            annotations={TEMPLATE_SNAPSHOT_ANNOTATION: revision},
            spec=ThreadSpec(
                manifest=project.spec.manifest.model_copy(deep=True),
                agent_name=project.spec.agent_name,
                source_thread_name=project.name,
                user_id=project.spec.user_id,
                project=True,
                template=True,
            ),
        )
        await self._store.create(template)
        logger.info("template created", data={"template": template.name, "project": project.name})
        return await self._view(template, None)

    async def delete_project_template(self, namespace: str, project_id: str) -> None:
        project = await self._root_project(namespace, project_id)
        template = await self._template_of(namespace, project)
        if template is None:
            raise NotFoundError(TEMPLATE_KIND, project_id, namespace)
        await self._store.delete(template)

    async def get_project_template(self, namespace: str, project_id: str) -> dict:
        project = await self._root_project(namespace, project_id)
        template = await self._template_of(namespace, project)
        if template is None:
            raise NotFoundError(TEMPLATE_KIND, project_id, namespace)
        return await self._view(template, await self._share_of(template))

    async def _template_by_public_id(self, namespace: str, public_id: str) -> tuple[Thread, ThreadShare]:
        shares = await self._store.list(
            ThreadShare,
            namespace=namespace,
            fields={"spec.public_id": public_id, "spec.template": True},
            limit=1,
        )
        if not shares:
            raise NotFoundError(SHARE_KIND, public_id, namespace)
        share = shares[0]
        template = await self._store.get(Thread, namespace, share.spec.project_thread_name)
        return template, share

    async def get_template(self, namespace: str, public_id: str) -> dict:
        template, share = await self._template_by_public_id(namespace, public_id)
        return await self._view(template, share)

    async def copy_template(self, namespace: str, public_id: str, user_id: str) -> Thread:
        """Create a new project for ``user_id`` from a template; the controller copies the rest."""
        template, _ = await self._template_by_public_id(namespace, public_id)

        annotations = {}
        revision = template.annotations.get(TEMPLATE_SNAPSHOT_ANNOTATION, "")
        if revision:
            annotations[TEMPLATE_SNAPSHOT_ANNOTATION] = revision

        project = Thread.new(
            namespace=namespace,
            generate_name=THREAD_PREFIX,
            annotations=annotations,
            spec=ThreadSpec(
                manifest=template.spec.manifest.model_copy(deep=True),
                agent_name=template.spec.agent_name,
                source_thread_name=template.name,
                user_id=user_id,
                project=True,
            ),
        )
        await self._store.create(project)
        logger.info("project created from template", data={"project": project.name, "template": template.name})
        return project
