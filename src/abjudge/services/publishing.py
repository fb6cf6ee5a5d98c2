"""Hand-over point from the content publisher: record published variants."""

from __future__ import annotations

from collections.abc import Sequence

from abjudge.errors import AbTestNotFound, InvalidTestState
from abjudge.models.domain import AbTestStatus, ContentRef, Variant, VariantPublished, normalize_refs
from abjudge.repos.ab_test_repo import AbTestStore
from abjudge.services.notifications import NotificationDispatcher, notify_published


def register_variant(
    store: AbTestStore,
    test_id: str,
    published_ref: str | Sequence[str] | None,
    content_refs: Sequence[ContentRef] = (),
    dispatcher: NotificationDispatcher | None = None,
) -> Variant:
    """
    Attach a variant (and its platform post ids) to a running test.

    A variant without a published_ref is stored but never scored. Special
    occasion tests also emit a `VariantPublished` event.
    """
    test = store.get_test(test_id)
    if test is None:
        raise AbTestNotFound(test_id)
    if test.status != AbTestStatus.RUNNING:
        raise InvalidTestState(test_id, "variants can only be added to running tests")

    refs = normalize_refs(published_ref)
    variant = store.add_variant(test_id, refs, content_refs)

    if refs and test.special_occasion:
        notify_published(
            dispatcher,
            VariantPublished(
                test_id=test_id,
                project_id=test.project_id,
                variant_id=variant.variant_id,
                published_ref=refs,
                special_occasion=test.special_occasion,
                content_refs=tuple(content_refs),
            ),
        )
    return variant
