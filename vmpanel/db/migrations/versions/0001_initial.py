"""Initial VM panel schema.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "vm_templates",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("cpu_cores", sa.Integer(), nullable=False),
        sa.Column("ram_mb", sa.Integer(), nullable=False),
        sa.Column("cpu_type", sa.String(64), nullable=False),
        sa.Column("disk_size_gb", sa.Integer(), nullable=False),
        sa.Column("disk_format", sa.String(16), nullable=False),
        sa.Column("network_mode", sa.String(6), nullable=False),
        sa.Column("display_type", sa.String(7), nullable=False),
        sa.Column("firmware_type", sa.String(4), nullable=False),
        sa.Column("os_type", sa.String(64), nullable=False),
        sa.Column("os_version", sa.String(64), nullable=False),
        sa.Column("disk_path", sa.String(1024), nullable=False),
        sa.Column("disk_size_actual", sa.BigInteger()),
        sa.Column("cloud_init_enabled", sa.Boolean(), nullable=False),
        sa.Column("cloud_init_user_data", sa.Text(), nullable=False),
        sa.Column("cloud_init_meta_data", sa.Text(), nullable=False),
        sa.Column("cloud_init_network_config", sa.Text(), nullable=False),
        sa.Column("is_public", sa.Boolean(), nullable=False),
        sa.Column("download_count", sa.Integer(), nullable=False),
        sa.Column("created_by", sa.Integer()),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_vm_templates"),
        sa.UniqueConstraint("name", name="uq_vm_templates_name"),
    )

    op.create_table(
        "virtual_machines",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("uuid", sa.String(36), nullable=False),
        sa.Column("cpu_cores", sa.Integer(), nullable=False),
        sa.Column("cpu_type", sa.String(64), nullable=False),
        sa.Column("cpu_pinning", sa.String(255), nullable=False),
        sa.Column("numa_topology", sa.String(255), nullable=False),
        sa.Column("ram_mb", sa.Integer(), nullable=False),
        sa.Column("balloon_enabled", sa.Boolean(), nullable=False),
        sa.Column("hugepages_enabled", sa.Boolean(), nullable=False),
        sa.Column("disk_path", sa.String(1024), nullable=False),
        sa.Column("disk_size_gb", sa.Integer(), nullable=False),
        sa.Column("disk_format", sa.String(16), nullable=False),
        sa.Column("cache_mode", sa.String(32), nullable=False),
        sa.Column("discard_enabled", sa.Boolean(), nullable=False),
        sa.Column("physical_disk_device", sa.String(255), nullable=False),
        sa.Column("boot_order", sa.String(32), nullable=False),
        sa.Column("iso_path", sa.String(1024), nullable=False),
        sa.Column("boot_from_disk", sa.Boolean(), nullable=False),
        sa.Column("firmware_type", sa.String(4), nullable=False),
        sa.Column("secure_boot", sa.Boolean(), nullable=False),
        sa.Column("tpm_enabled", sa.Boolean(), nullable=False),
        sa.Column("network_mode", sa.String(6), nullable=False),
        sa.Column("network_bridge", sa.String(64), nullable=False),
        sa.Column("mac_address", sa.String(17), nullable=False),
        sa.Column("network_model", sa.String(32), nullable=False),
        sa.Column("vlan_id", sa.Integer()),
        sa.Column("bandwidth_limit_down", sa.Integer()),
        sa.Column("bandwidth_limit_up", sa.Integer()),
        sa.Column("display_type", sa.String(7), nullable=False),
        sa.Column("spice_port", sa.Integer(), nullable=False),
        sa.Column("vnc_port", sa.Integer(), nullable=False),
        sa.Column("spice_password", sa.String(64), nullable=False),
        sa.Column("vnc_password", sa.String(64), nullable=False),
        sa.Column("qmp_socket_path", sa.String(1024), nullable=False),
        sa.Column("status", sa.String(7), nullable=False),
        sa.Column("pid", sa.Integer()),
        sa.Column("process_started_at", sa.Float()),
        sa.Column("autostart", sa.Boolean(), nullable=False),
        sa.Column("autostart_delay", sa.Integer(), nullable=False),
        sa.Column("tags", sa.Text(), nullable=False),
        sa.Column("os_type", sa.String(64), nullable=False),
        sa.Column("os_version", sa.String(64), nullable=False),
        sa.Column("template_id", sa.Integer()),
        sa.Column("created_by", sa.Integer()),
        *_timestamps(),
        sa.Column("last_started_at", sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint("id", name="pk_virtual_machines"),
        sa.UniqueConstraint("name", name="uq_virtual_machines_name"),
        sa.UniqueConstraint("uuid", name="uq_virtual_machines_uuid"),
        sa.UniqueConstraint("spice_port", name="uq_virtual_machines_spice_port"),
        sa.UniqueConstraint("vnc_port", name="uq_virtual_machines_vnc_port"),
        sa.UniqueConstraint("network_bridge", "mac_address", name="uq_virtual_machines_bridge_mac"),
        sa.ForeignKeyConstraint(
            ["template_id"],
            ["vm_templates.id"],
            name="fk_virtual_machines_template_id_vm_templates",
            ondelete="SET NULL",
        ),
    )

    op.create_table(
        "vm_backups",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("vm_id", sa.Integer()),
        sa.Column("vm_name", sa.String(255), nullable=False),
        sa.Column("backup_name", sa.String(255), nullable=False),
        sa.Column("backup_path", sa.String(1024), nullable=False),
        sa.Column("backup_size", sa.BigInteger()),
        sa.Column("compressed", sa.Boolean(), nullable=False),
        sa.Column("compression_type", sa.String(16), nullable=False),
        sa.Column("status", sa.String(9), nullable=False),
        sa.Column("error_message", sa.Text()),
        sa.Column("notes", sa.Text(), nullable=False),
        sa.Column("created_by", sa.Integer()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint("id", name="pk_vm_backups"),
        sa.ForeignKeyConstraint(
            ["vm_id"],
            ["virtual_machines.id"],
            name="fk_vm_backups_vm_id_virtual_machines",
            ondelete="SET NULL",
        ),
    )

    op.create_table(
        "vm_snapshots",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("vm_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("snapshot_type", sa.String(6), nullable=False),
        sa.Column("parent_id", sa.Integer()),
        sa.Column("size_bytes", sa.BigInteger()),
        sa.Column("status", sa.String(9), nullable=False),
        sa.Column("error_message", sa.Text()),
        sa.Column("created_by", sa.Integer()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint("id", name="pk_vm_snapshots"),
        sa.ForeignKeyConstraint(
            ["vm_id"],
            ["virtual_machines.id"],
            name="fk_vm_snapshots_vm_id_virtual_machines",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["parent_id"],
            ["vm_snapshots.id"],
            name="fk_vm_snapshots_parent_id_vm_snapshots",
            ondelete="SET NULL",
        ),
    )

    op.create_table(
        "iso_library",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("filename", sa.String(255), nullable=False),
        sa.Column("file_path", sa.String(1024), nullable=False),
        sa.Column("file_size", sa.BigInteger()),
        sa.Column("checksum_sha256", sa.String(64), nullable=False),
        sa.Column("os_type", sa.String(64), nullable=False),
        sa.Column("os_version", sa.String(64), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("download_url", sa.String(2048), nullable=False),
        sa.Column("download_status", sa.String(11), nullable=False),
        sa.Column("download_progress", sa.Integer(), nullable=False),
        sa.Column("download_error", sa.Text(), nullable=False),
        sa.Column("is_predefined", sa.Boolean(), nullable=False),
        sa.Column("is_verified", sa.Boolean(), nullable=False),
        sa.Column("created_by", sa.Integer()),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_iso_library"),
        sa.UniqueConstraint("filename", name="uq_iso_library_filename"),
    )


def downgrade() -> None:
    op.drop_table("iso_library")
    op.drop_table("vm_snapshots")
    op.drop_table("vm_backups")
    op.drop_table("virtual_machines")
    op.drop_table("vm_templates")
