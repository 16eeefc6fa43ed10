# MiastoAlert Moderation
# Role-gated mutations for the admin panel.
#
#   owner, moderator:  delete_report, set_banned, overview
#   owner only:        set_role, reset_city
#
# The owner role is provisioned once and never assigned, removed or banned
# through this module.

import logging

import lifecycle
from errors import Forbidden, NotFound, ValidationError
from identity import CITY_UNSET, STAFF_ROLES, Caller, Role, UserStore, require_role

log = logging.getLogger("miastoalert")

ASSIGNABLE_ROLES = frozenset({Role.MODERATOR.value, Role.USER.value})
OWNER_ONLY = frozenset({Role.OWNER.value})
OVERVIEW_LIMIT = 200


def _target_user(user_id) -> dict:
    user = UserStore.get_user(user_id)
    if user is None:
        raise NotFound("User does not exist.")
    return user


def delete_report(caller: Caller, report_id: str) -> dict:
    require_role(caller, STAFF_ROLES)
    result = lifecycle.delete_report(report_id)
    log.info("MODERATION %s deleted report %s", caller.id, report_id)
    return result


def set_banned(caller: Caller, user_id: str, banned: bool) -> dict:
    require_role(caller, STAFF_ROLES)
    target = _target_user(user_id)
    if target["role"] == Role.OWNER.value:
        raise Forbidden("The owner account cannot be banned.")
    UserStore.update_user(user_id, banned=bool(banned))
    log.info("MODERATION %s set banned=%s on %s", caller.id, bool(banned), user_id)
    return _target_user(user_id)


def set_role(caller: Caller, user_id: str, role: str) -> dict:
    require_role(caller, OWNER_ONLY)
    if role not in ASSIGNABLE_ROLES:
        raise ValidationError("Role must be 'moderator' or 'user'.")
    target = _target_user(user_id)
    if target["role"] == Role.OWNER.value:
        raise Forbidden("The owner role cannot be changed.")
    UserStore.update_user(user_id, role=role)
    log.info("MODERATION %s set role=%s on %s", caller.id, role, user_id)
    return _target_user(user_id)


def reset_city(caller: Caller, user_id: str) -> dict:
    """Clear a user's city; their existing reports keep the old one."""
    require_role(caller, OWNER_ONLY)
    _target_user(user_id)
    UserStore.update_user(user_id, city=CITY_UNSET)
    log.info("MODERATION %s reset city of %s", caller.id, user_id)
    return _target_user(user_id)


def overview(caller: Caller, limit=OVERVIEW_LIMIT) -> dict:
    require_role(caller, STAFF_ROLES)
    return {
        "users": UserStore.list_users(limit=limit),
        "reports": [r.to_dict() for r in lifecycle.list_recent_reports(limit=limit)],
    }
