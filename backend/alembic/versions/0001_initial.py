"""initial command center schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-17 00:00:00
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

UUID_TYPE = sa.Uuid(as_uuid=True)


def _org_column() -> sa.Column:
    return sa.Column(
        "org_id",
        UUID_TYPE,
        sa.ForeignKey("organizations.org_id", ondelete="CASCADE"),
        nullable=False,
    )


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)


def upgrade() -> None:
    op.create_table(
        "organizations",
        sa.Column("org_id", UUID_TYPE, primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False, unique=True),
        sa.Column("timezone", sa.String(length=64)),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_table(
        "tours",
        sa.Column("tour_id", sa.String(length=36), primary_key=True),
        _org_column(),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=255)),
        sa.Column("duration_minutes", sa.Integer()),
        sa.Column("meeting_point", sa.String(length=255)),
        sa.Column("status", sa.String(length=16), nullable=False),
        _created_at(),
    )
    op.create_index("ix_tours_org_status", "tours", ["org_id", "status"])

    op.create_table(
        "pickup_addresses",
        sa.Column("address_id", sa.String(length=36), primary_key=True),
        _org_column(),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("short_name", sa.String(length=64)),
        sa.Column("address", sa.String(length=500)),
        sa.Column("zone", sa.String(length=64)),
        sa.Column("latitude", sa.Float()),
        sa.Column("longitude", sa.Float()),
        sa.Column("pickup_instructions", sa.String(length=1000)),
        sa.Column("average_pickup_minutes", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="1"),
        sa.Column("sort_order", sa.Integer(), nullable=False),
        _created_at(),
    )
    op.create_index("ix_pickup_addresses_org_zone", "pickup_addresses", ["org_id", "zone"])
    op.create_table(
        "zone_travel_times",
        sa.Column("travel_time_id", sa.Integer(), primary_key=True, autoincrement=True),
        _org_column(),
        sa.Column("from_zone", sa.String(length=64), nullable=False),
        sa.Column("to_zone", sa.String(length=64), nullable=False),
        sa.Column("estimated_minutes", sa.Integer(), nullable=False),
        sa.UniqueConstraint("org_id", "from_zone", "to_zone", name="uq_zone_travel_times_pair"),
    )

    op.create_table(
        "guides",
        sa.Column("guide_id", sa.String(length=36), primary_key=True),
        _org_column(),
        sa.Column("first_name", sa.String(length=120), nullable=False),
        sa.Column("last_name", sa.String(length=120)),
        sa.Column("email", sa.String(length=255)),
        sa.Column("phone", sa.String(length=50)),
        sa.Column("vehicle_capacity", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False),
        sa.Column("valid_on", sa.Date()),
        sa.Column("available_from", sa.Time()),
        sa.Column("available_to", sa.Time()),
        sa.Column("base_zone", sa.String(length=64)),
        sa.Column("preferred_zones", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        _created_at(),
        sa.Column("archived_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_guides_org_status", "guides", ["org_id", "status"])
    op.create_index("ix_guides_org_valid_on", "guides", ["org_id", "valid_on"])
    op.create_table(
        "guide_availability",
        sa.Column("availability_id", sa.Integer(), primary_key=True, autoincrement=True),
        _org_column(),
        sa.Column("guide_id", sa.String(length=36), sa.ForeignKey("guides.guide_id", ondelete="CASCADE"), nullable=False),
        sa.Column("day_of_week", sa.Integer(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.Column("is_available", sa.Boolean(), nullable=False, server_default="1"),
    )
    op.create_index("ix_guide_availability_guide_id", "guide_availability", ["guide_id"])
    op.create_table(
        "guide_availability_overrides",
        sa.Column("override_id", sa.Integer(), primary_key=True, autoincrement=True),
        _org_column(),
        sa.Column("guide_id", sa.String(length=36), sa.ForeignKey("guides.guide_id", ondelete="CASCADE"), nullable=False),
        sa.Column("override_date", sa.Date(), nullable=False),
        sa.Column("is_available", sa.Boolean(), nullable=False),
        sa.Column("start_time", sa.Time()),
        sa.Column("end_time", sa.Time()),
        sa.Column("reason", sa.String(length=255)),
        sa.UniqueConstraint("guide_id", "override_date", name="uq_guide_override_date"),
    )
    op.create_table(
        "tour_guide_qualifications",
        sa.Column("qualification_id", sa.Integer(), primary_key=True, autoincrement=True),
        _org_column(),
        sa.Column("tour_id", sa.String(length=36), sa.ForeignKey("tours.tour_id", ondelete="CASCADE"), nullable=False),
        sa.Column("guide_id", sa.String(length=36), sa.ForeignKey("guides.guide_id", ondelete="CASCADE"), nullable=False),
        sa.Column("is_primary", sa.Boolean(), nullable=False, server_default="0"),
        sa.UniqueConstraint("tour_id", "guide_id", name="uq_tour_guide_qualification"),
    )

    op.create_table(
        "bookings",
        sa.Column("booking_id", sa.String(length=36), primary_key=True),
        _org_column(),
        sa.Column("reference_number", sa.String(length=32)),
        sa.Column("tour_id", sa.String(length=36), sa.ForeignKey("tours.tour_id"), nullable=False),
        sa.Column("booking_date", sa.Date(), nullable=False),
        sa.Column("booking_time", sa.String(length=5), nullable=False),
        sa.Column("customer_name", sa.String(length=255)),
        sa.Column("customer_phone", sa.String(length=50)),
        sa.Column("customer_email", sa.String(length=255)),
        sa.Column("adult_count", sa.Integer(), nullable=False),
        sa.Column("child_count", sa.Integer(), nullable=False),
        sa.Column("infant_count", sa.Integer(), nullable=False),
        sa.Column("is_private", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column(
            "pickup_address_id",
            sa.String(length=36),
            sa.ForeignKey("pickup_addresses.address_id", ondelete="SET NULL"),
        ),
        sa.Column("special_requests", sa.String(length=1000)),
        sa.Column("status", sa.String(length=16), nullable=False),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_bookings_org_run", "bookings", ["org_id", "booking_date", "tour_id", "booking_time"])
    op.create_index("ix_bookings_org_status", "bookings", ["org_id", "status"])
    op.create_table(
        "booking_participants",
        sa.Column("participant_id", sa.Integer(), primary_key=True, autoincrement=True),
        _org_column(),
        sa.Column(
            "booking_id", sa.String(length=36), sa.ForeignKey("bookings.booking_id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("first_name", sa.String(length=120), nullable=False),
        sa.Column("last_name", sa.String(length=120)),
        sa.Column("participant_type", sa.String(length=16), nullable=False),
        sa.Column("dietary_requirements", sa.String(length=255)),
        sa.Column("accessibility_needs", sa.String(length=255)),
    )
    op.create_index("ix_booking_participants_booking_id", "booking_participants", ["booking_id"])

    op.create_table(
        "dispatch_days",
        sa.Column("dispatch_day_id", sa.Integer(), primary_key=True, autoincrement=True),
        _org_column(),
        sa.Column("dispatch_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("optimized_at", sa.DateTime(timezone=True)),
        sa.Column("dispatched_at", sa.DateTime(timezone=True)),
        sa.Column("dispatched_by", sa.String(length=128)),
        sa.Column("reopened_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("org_id", "dispatch_date", name="uq_dispatch_days_org_date"),
    )
    op.create_table(
        "guide_assignments",
        sa.Column("assignment_id", sa.String(length=36), primary_key=True),
        _org_column(),
        sa.Column("dispatch_date", sa.Date(), nullable=False),
        sa.Column("tour_id", sa.String(length=36), sa.ForeignKey("tours.tour_id"), nullable=False),
        sa.Column("run_time", sa.String(length=5), nullable=False),
        sa.Column("guide_id", sa.String(length=36), sa.ForeignKey("guides.guide_id"), nullable=False),
        sa.Column("is_lead_guide", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("notified_at", sa.DateTime(timezone=True)),
        _created_at(),
        sa.UniqueConstraint(
            "org_id", "dispatch_date", "tour_id", "run_time", "guide_id", name="uq_guide_assignments_run_guide"
        ),
    )
    op.create_index("ix_guide_assignments_org_date", "guide_assignments", ["org_id", "dispatch_date"])
    op.create_table(
        "pickup_assignments",
        sa.Column("pickup_id", sa.String(length=36), primary_key=True),
        _org_column(),
        sa.Column("dispatch_date", sa.Date(), nullable=False),
        sa.Column(
            "guide_assignment_id",
            sa.String(length=36),
            sa.ForeignKey("guide_assignments.assignment_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "booking_id", sa.String(length=36), sa.ForeignKey("bookings.booking_id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column(
            "pickup_address_id",
            sa.String(length=36),
            sa.ForeignKey("pickup_addresses.address_id", ondelete="SET NULL"),
        ),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("passenger_count", sa.Integer(), nullable=False),
        sa.Column("calculated_pickup_time", sa.String(length=5)),
        sa.Column("drive_time_minutes", sa.Integer(), nullable=False),
        sa.Column("time_overridden", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("actual_pickup_time", sa.DateTime(timezone=True)),
        sa.Column("status", sa.String(length=16), nullable=False),
        _created_at(),
        sa.UniqueConstraint("org_id", "dispatch_date", "booking_id", name="uq_pickup_assignments_booking"),
    )
    op.create_index(
        "ix_pickup_assignments_guide_assignment", "pickup_assignments", ["guide_assignment_id", "position"]
    )
    op.create_table(
        "dispatch_warning_resolutions",
        sa.Column("resolution_id", sa.Integer(), primary_key=True, autoincrement=True),
        _org_column(),
        sa.Column("dispatch_date", sa.Date(), nullable=False),
        sa.Column("warning_id", sa.String(length=64), nullable=False),
        sa.Column("warning_type", sa.String(length=32), nullable=False),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column("resolved_by", sa.String(length=128)),
        _created_at(),
        sa.UniqueConstraint("org_id", "dispatch_date", "warning_id", name="uq_dispatch_warning_resolution"),
    )

    op.create_table(
        "outbox_events",
        sa.Column("event_id", sa.String(length=36), primary_key=True),
        _org_column(),
        sa.Column("kind", sa.String(length=64), nullable=False),
        sa.Column("payload_json", sa.JSON(), nullable=False),
        sa.Column("dedupe_key", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True)),
        sa.Column("last_error", sa.String(length=255)),
        sa.Column("delivered_at", sa.DateTime(timezone=True)),
        _created_at(),
    )
    op.create_index("ix_outbox_org_status", "outbox_events", ["org_id", "status", "next_attempt_at"])
    op.create_index("ix_outbox_org_dedupe", "outbox_events", ["org_id", "dedupe_key"], unique=True)


def downgrade() -> None:
    op.drop_index("ix_outbox_org_dedupe", table_name="outbox_events")
    op.drop_index("ix_outbox_org_status", table_name="outbox_events")
    op.drop_table("outbox_events")
    op.drop_table("dispatch_warning_resolutions")
    op.drop_index("ix_pickup_assignments_guide_assignment", table_name="pickup_assignments")
    op.drop_table("pickup_assignments")
    op.drop_index("ix_guide_assignments_org_date", table_name="guide_assignments")
    op.drop_table("guide_assignments")
    op.drop_table("dispatch_days")
    op.drop_index("ix_booking_participants_booking_id", table_name="booking_participants")
    op.drop_table("booking_participants")
    op.drop_index("ix_bookings_org_status", table_name="bookings")
    op.drop_index("ix_bookings_org_run", table_name="bookings")
    op.drop_table("bookings")
    op.drop_table("tour_guide_qualifications")
    op.drop_table("guide_availability_overrides")
    op.drop_index("ix_guide_availability_guide_id", table_name="guide_availability")
    op.drop_table("guide_availability")
    op.drop_index("ix_guides_org_valid_on", table_name="guides")
    op.drop_index("ix_guides_org_status", table_name="guides")
    op.drop_table("guides")
    op.drop_table("zone_travel_times")
    op.drop_index("ix_pickup_addresses_org_zone", table_name="pickup_addresses")
    op.drop_table("pickup_addresses")
    op.drop_index("ix_tours_org_status", table_name="tours")
    op.drop_table("tours")
    op.drop_table("organizations")
