"""Access control for respondent-facing survey operations.

`resolve_access` is the single decision point for draft reads/writes, public
rendering and response submission. Three outcomes are possible:

- owner:  the caller is visiting the link minted for them;
- shared: the caller holds a share grant, pinned to the grant's owner;
- none:   anything else.

Administrator-only routes do not come through here; they use
`security.verify_admin`.
"""
from __future__ import annotations
import logging
from typing import Any, Optional

from sqlalchemy.orm import Session

from errors import Forbidden
from schemas import AccessDecision
from store import resolve_canonical_survey, find_share, is_owner_of_record

logger = logging.getLogger(__name__)


def resolve_access(db: Session, survey_ref: Any, user_id: str, link_owner_id: Optional[str] = None) -> AccessDecision:
    """Decide access for (survey, authenticated user, link owner).

    Args:
        db (Session): DB session.
        survey_ref: Internal id or public token of the survey.
        user_id (str): Authenticated caller.
        link_owner_id (str|None): Owner embedded in the link being visited, if any.

    Returns:
        AccessDecision: granted/role/effective_owner_id for the canonical survey id.

    Raises:
        NotFound: the survey does not exist.
    """
    survey = resolve_canonical_survey(db, survey_ref)
    link_owner_id = link_owner_id or None

    if link_owner_id is not None and link_owner_id == user_id:
        decision = AccessDecision(granted=True, role="owner", effective_owner_id=link_owner_id, survey_id=survey.id)
    else:
        grant = find_share(db, survey.id, user_id)
        if grant is None:
            decision = AccessDecision(granted=False, role="none", survey_id=survey.id)
        elif link_owner_id is not None and link_owner_id != grant.owner_id:
            # a grant for one owner never opens another owner's link
            decision = AccessDecision(granted=False, role="none", survey_id=survey.id)
        else:
            decision = AccessDecision(granted=True, role="shared", effective_owner_id=grant.owner_id, survey_id=survey.id)

    logger.info("Access survey=%s user=%s link_owner=%s -> %s",
                survey.id, user_id, link_owner_id, decision.role)
    return decision


def require_access(db: Session, survey_ref: Any, user_id: str, link_owner_id: Optional[str] = None) -> AccessDecision:
    """`resolve_access`, raising Forbidden on denial.

    A named link owner must also hold a link minted for this survey.
    """
    decision = resolve_access(db, survey_ref, user_id, link_owner_id)
    if not decision.granted:
        raise Forbidden("You do not have access to this survey")
    if link_owner_id and not is_owner_of_record(db, decision.survey_id, link_owner_id):
        logger.info("No link issued on survey=%s for owner=%s", decision.survey_id, link_owner_id)
        raise Forbidden("You do not have access to this survey")
    return decision
