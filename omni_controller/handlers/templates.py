"""Template steps: public share records and snapshot-upgrade detection."""

from __future__ import annotations

from ..convergence import create_if_not_exists, get_or_none
from ..naming import public_id
from ..resources import TEMPLATE_SNAPSHOT_ANNOTATION, Thread, ThreadShare, ThreadShareSpec
from ..router import Request, Response


async def ensure_template_thread_share(req: Request, resp: Response) -> None:
    thread: Thread = req.obj
    if not thread.spec.template:
        return
    if await get_or_none(req.store, ThreadShare, thread.namespace, thread.name) is not None:
        return

    share = ThreadShare.new(
        name=thread.name,
        namespace=thread.namespace,
        spec=ThreadShareSpec(
            user_id=thread.spec.user_id,
            project_thread_name=thread.name,
            template=True,
            public=True,
            public_id=public_id(),
        ),
    )
    await create_if_not_exists(req.store, share)


async def snapshot_upgrade_status(req: Request, resp: Response) -> None:
    """Flag projects whose source template has a newer snapshot than they were copied from."""
    thread: Thread = req.obj
    if not thread.spec.project or not thread.spec.source_thread_name:
        return

    source = await get_or_none(req.store, Thread, thread.namespace, thread.spec.source_thread_name)
    if source is None:
        # a deleted template offers nothing to upgrade to
        thread.status.snapshot_upgrade_available = False
        return
    if not source.spec.template:
        return

    source_rev = source.annotations.get(TEMPLATE_SNAPSHOT_ANNOTATION, "")
    project_rev = thread.annotations.get(TEMPLATE_SNAPSHOT_ANNOTATION, "")
    thread.status.snapshot_upgrade_available = source_rev != "" and project_rev != source_rev
