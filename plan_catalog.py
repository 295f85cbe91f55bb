import logging
from typing import List, Optional

from sqlalchemy import func, or_

from database import Panel, Plan, Subscription, SUB_ACTIVE
from errors import NotFound, PlanInUse

logger = logging.getLogger(__name__)

PANEL_FIELDS = ('name', 'base_url', 'admin_username', 'admin_credential')
PLAN_FIELDS = (
    'name', 'panel_id', 'data_limit_gb', 'duration_days', 'price',
    'max_connections', 'visible', 'features', 'description'
)


def validate_plan_fields(fields):
    """Raise ValueError for values a sellable plan may not have"""
    if 'data_limit_gb' in fields and not fields['data_limit_gb'] > 0:
        raise ValueError("data_limit_gb must be greater than 0")
    if 'duration_days' in fields and not fields['duration_days'] > 0:
        raise ValueError("duration_days must be greater than 0")
    if 'price' in fields and fields['price'] < 0:
        raise ValueError("price must not be negative")
    if 'max_connections' in fields and not fields['max_connections'] > 0:
        raise ValueError("max_connections must be greater than 0")
    if 'features' in fields and not all(isinstance(f, str) for f in fields['features']):
        raise ValueError("features must be a list of strings")


class PlanCatalog:
    """Read-mostly store of panels and the plans sold on them"""

    def __init__(self, db, panel_client=None):
        self.db = db
        self.panel_client = panel_client

    # Panel methods
    async def register_panel(self, name, base_url, admin_username, admin_credential) -> Panel:
        panel = Panel(
            name=name,
            base_url=base_url.rstrip('/'),
            admin_username=admin_username,
            admin_credential=admin_credential
        )
        with self.db.session_scope() as session:
            session.add(panel)
            session.flush()

        # probed only once the panel has an id to cache its token under
        if self.panel_client is not None:
            status = await self.panel_client.probe_panel(panel)
            with self.db.session_scope() as session:
                session.query(Panel).filter(Panel.id == panel.id).update(
                    {Panel.connectivity_status: status}
                )
            panel.connectivity_status = status

        logger.info(f"Panel created: {name} ({panel.connectivity_status})")
        return panel

    def get_panel(self, panel_id) -> Panel:
        with self.db.session_scope() as session:
            panel = session.get(Panel, panel_id)
            if panel is None:
                raise NotFound('Panel', panel_id)
            return panel

    def list_panels(self) -> List[Panel]:
        with self.db.session_scope() as session:
            return session.query(Panel).order_by(Panel.id).all()

    def update_panel(self, panel_id, **updates) -> Panel:
        unknown = set(updates) - set(PANEL_FIELDS)
        if unknown:
            raise ValueError(f"Unknown panel fields: {', '.join(sorted(unknown))}")

        with self.db.session_scope() as session:
            panel = session.get(Panel, panel_id)
            if panel is None:
                raise NotFound('Panel', panel_id)
            for key, value in updates.items():
                setattr(panel, key, value.rstrip('/') if key == 'base_url' else value)

        logger.info(f"Panel updated: {panel_id}")
        return panel

    def delete_panel(self, panel_id):
        with self.db.session_scope() as session:
            panel = session.get(Panel, panel_id)
            if panel is None:
                raise NotFound('Panel', panel_id)
            plan_count = session.query(Plan).filter(Plan.panel_id == panel_id).count()
            if plan_count:
                raise PlanInUse(f"Panel {panel_id} still has {plan_count} plan(s)")
            session.delete(panel)

        logger.info(f"Panel deleted: {panel_id}")

    # Plan methods
    def create_plan(self, name, panel_id, data_limit_gb, duration_days, price,
                    max_connections=1, visible=True, features=None, description=None) -> Plan:
        fields = {
            'name': name,
            'panel_id': panel_id,
            'data_limit_gb': data_limit_gb,
            'duration_days': duration_days,
            'price': price,
            'max_connections': max_connections,
            'visible': visible,
            'features': list(features or []),
            'description': description,
        }
        validate_plan_fields(fields)

        with self.db.session_scope() as session:
            if session.get(Panel, panel_id) is None:
                raise NotFound('Panel', panel_id)
            plan = Plan(**fields)
            session.add(plan)
            session.flush()

        logger.info(f"Plan created: {name} on panel {panel_id}")
        return plan

    def get_plan(self, plan_id) -> Plan:
        with self.db.session_scope() as session:
            plan = session.get(Plan, plan_id)
            if plan is None:
                raise NotFound('Plan', plan_id)
            return plan

    def list_plans(self, visible_only=False) -> List[Plan]:
        with self.db.session_scope() as session:
            query = session.query(Plan)
            if visible_only:
                query = query.filter(Plan.visible.is_(True))
            return query.order_by(Plan.price, Plan.id).all()

    def list_visible_plans(self) -> List[Plan]:
        return self.list_plans(visible_only=True)

    def get_visible_plan(self, plan_id) -> Optional[Plan]:
        with self.db.session_scope() as session:
            plan = session.get(Plan, plan_id)
            if plan is None or not plan.visible:
                return None
            return plan

    def plans_for_panel(self, panel_id) -> List[Plan]:
        with self.db.session_scope() as session:
            return session.query(Plan).filter(Plan.panel_id == panel_id).order_by(Plan.id).all()

    def update_plan(self, plan_id, **updates) -> Plan:
        """Edit a plan; subscriptions keep the limits they were sold with"""
        unknown = set(updates) - set(PLAN_FIELDS)
        if unknown:
            raise ValueError(f"Unknown plan fields: {', '.join(sorted(unknown))}")
        validate_plan_fields(updates)

        with self.db.session_scope() as session:
            plan = session.get(Plan, plan_id)
            if plan is None:
                raise NotFound('Plan', plan_id)
            if 'panel_id' in updates and session.get(Panel, updates['panel_id']) is None:
                raise NotFound('Panel', updates['panel_id'])
            for key, value in updates.items():
                setattr(plan, key, list(value) if key == 'features' else value)

        logger.info(f"Plan updated: {plan_id}")
        return plan

    def toggle_visibility(self, plan_id) -> Plan:
        with self.db.session_scope() as session:
            plan = session.get(Plan, plan_id)
            if plan is None:
                raise NotFound('Plan', plan_id)
            plan.visible = not plan.visible

        logger.info(f"Plan visibility toggled: {plan_id} -> {'visible' if plan.visible else 'hidden'}")
        return plan

    def duplicate_plan(self, plan_id, new_name) -> Plan:
        original = self.get_plan(plan_id)
        return self.create_plan(
            name=new_name,
            panel_id=original.panel_id,
            data_limit_gb=original.data_limit_gb,
            duration_days=original.duration_days,
            price=original.price,
            max_connections=original.max_connections,
            visible=False,
            features=original.features,
            description=original.description
        )

    def delete_plan(self, plan_id):
        with self.db.session_scope() as session:
            plan = session.get(Plan, plan_id)
            if plan is None:
                raise NotFound('Plan', plan_id)
            active = session.query(Subscription).filter(
                Subscription.plan_id == plan_id,
                Subscription.status == SUB_ACTIVE
            ).count()
            if active:
                raise PlanInUse(f"Plan {plan_id} has {active} active subscription(s)")
            session.delete(plan)

        logger.info(f"Plan deleted: {plan_id}")

    def search_plans(self, text) -> List[Plan]:
        pattern = f"%{text}%"
        with self.db.session_scope() as session:
            return session.query(Plan).filter(
                or_(Plan.name.ilike(pattern), Plan.description.ilike(pattern))
            ).order_by(Plan.price, Plan.data_limit_gb).all()

    def plan_stats(self):
        with self.db.session_scope() as session:
            total_plans = session.query(Plan).count()
            visible_plans = session.query(Plan).filter(Plan.visible.is_(True)).count()
            total_subscriptions = session.query(Subscription).count()
            average_price = session.query(func.avg(Plan.price)).filter(
                Plan.visible.is_(True)
            ).scalar() or 0
            most_popular = session.query(
                Plan.name, func.count(Subscription.id).label('subscription_count')
            ).outerjoin(
                Subscription, Subscription.plan_id == Plan.id
            ).filter(
                Plan.visible.is_(True)
            ).group_by(Plan.id, Plan.name).order_by(
                func.count(Subscription.id).desc()
            ).first()

            return {
                'total_plans': total_plans,
                'visible_plans': visible_plans,
                'total_subscriptions': total_subscriptions,
                'average_price': float(average_price),
                'most_popular_plan': most_popular[0] if most_popular else None,
            }
