import asyncio
import logging

from config import DATABASE_URL, PANEL_TEMPLATES, PLAN_TEMPLATES
from database import Database
from panel_client import PanelClient
from plan_catalog import PlanCatalog

logger = logging.getLogger(__name__)


async def init_database(db_url=DATABASE_URL, probe=True):
    """Create tables and seed the configured panels and plans"""
    db = Database(db_url)
    print("✅ Database tables created successfully!")

    panel_client = PanelClient(db) if probe else None
    catalog = PlanCatalog(db, panel_client)
    try:
        panels = {panel.name: panel for panel in catalog.list_panels()}
        first_panel = None
        for template in PANEL_TEMPLATES.values():
            if not template["base_url"]:
                print(f"⚠️ Panel {template['name']} has no URL, skipped")
                continue
            panel = panels.get(template["name"])
            if panel is None:
                panel = await catalog.register_panel(**template)
                print(f"✅ Panel {panel.name} created ({panel.connectivity_status})")
            first_panel = first_panel or panel

        if first_panel is None:
            print("❌ No panel available, default plans not created")
            return db

        existing = {plan.name for plan in catalog.list_plans()}
        for template in PLAN_TEMPLATES.values():
            if template["name"] in existing:
                continue
            catalog.create_plan(panel_id=first_panel.id, **template)
        print("✅ Default plans created successfully!")
    finally:
        if panel_client is not None:
            await panel_client.close()
    return db


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    print("Initializing database...")
    asyncio.run(init_database())
    print("Done!")
