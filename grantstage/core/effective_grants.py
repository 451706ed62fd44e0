"""
Effective grants resolution: direct grants plus everything inherited
through assigned roles, each entry tagged with its provenance.

Entries are never merged. A pair granted both directly and via a role
appears twice. Any failed fetch fails the whole resolution.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List

from . import config
from .errors import ResolutionError
from .schema import ExtendedGrantedPermission, GrantSource, GrantedPermission, RoleAssignment
from ..util.logging import logger


@dataclass
class EffectiveGrants:
    identity: str
    direct_grants: List[GrantedPermission] = field(default_factory=list)
    assigned_roles: List[RoleAssignment] = field(default_factory=list)
    role_grants: Dict[str, List[GrantedPermission]] = field(default_factory=dict)
    effective: List[ExtendedGrantedPermission] = field(default_factory=list)

    def from_role(self, role_name: str) -> List[ExtendedGrantedPermission]:
        return [g for g in self.effective if g.source_role == role_name]

    def to_dict(self) -> Dict:
        return {
            "identity": self.identity,
            "direct_grants": [g.to_dict() for g in self.direct_grants],
            "assigned_roles": [
                {"role_name": r.role_name, "admin_option": r.admin_option} for r in self.assigned_roles
            ],
            "role_grants": {name: [g.to_dict() for g in grants] for name, grants in self.role_grants.items()},
            "effective": [g.to_dict() for g in self.effective],
        }


class EffectiveGrantsResolver:
    """
    Resolves an identity's effective grants.

    grants_source must provide fetch_user_grants(name) and
    fetch_role_grants(role); role_source must provide
    fetch_role_assignments(name). ClickHouseAccessSource provides all three.
    """

    def __init__(self, grants_source, role_source=None, max_workers: int = None):
        self.grants_source = grants_source
        self.role_source = role_source or grants_source
        self.max_workers = max_workers or config.RESOLVER_MAX_WORKERS

    def resolve(self, identity: str) -> EffectiveGrants:
        if not identity or not identity.strip():
            return EffectiveGrants(identity=identity or "")

        try:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                direct_future = pool.submit(self.grants_source.fetch_user_grants, identity)
                roles_future = pool.submit(self.role_source.fetch_role_assignments, identity)
                assigned_roles = list(roles_future.result())

                # Per-role fetches are independent; results are read back in assignment order
                role_futures = [
                    (assignment.role_name, pool.submit(self.grants_source.fetch_role_grants, assignment.role_name))
                    for assignment in assigned_roles
                ]
                direct_grants = list(direct_future.result())
                role_grants: Dict[str, List[GrantedPermission]] = {}
                for role_name, future in role_futures:
                    role_grants[role_name] = list(future.result())
        except Exception as e:
            logger.log_resolution_failed(identity, e)
            raise ResolutionError(identity, e) from e

        effective = [
            ExtendedGrantedPermission(g.permission_id, g.scope, GrantSource.DIRECT)
            for g in direct_grants
        ]
        for role_name, grants in role_grants.items():
            effective.extend(
                ExtendedGrantedPermission(g.permission_id, g.scope, GrantSource.ROLE, role_name)
                for g in grants
            )

        logger.log_resolution(identity, len(direct_grants), len(assigned_roles), len(effective))
        return EffectiveGrants(
            identity=identity,
            direct_grants=direct_grants,
            assigned_roles=assigned_roles,
            role_grants=role_grants,
            effective=effective,
        )
