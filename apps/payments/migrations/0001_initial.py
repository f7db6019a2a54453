import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("orders", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="PaymentLog",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("provider", models.CharField(default="paystack", max_length=50)),
                ("reference", models.CharField(db_index=True, max_length=100)),
                ("source", models.CharField(max_length=20)),
                ("event", models.CharField(blank=True, max_length=50)),
                ("raw_payload", models.JSONField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
        ),
        migrations.CreateModel(
            name="PaymentRecord",
            fields=[
                ("reference", models.CharField(max_length=100, primary_key=True, serialize=False)),
                (
                    "status",
                    models.CharField(
                        choices=[("pending", "Pending"), ("success", "Success"), ("failed", "Failed")],
                        default="pending",
                        max_length=10,
                    ),
                ),
                ("gateway_transaction_id", models.CharField(blank=True, max_length=100, null=True)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("raw_payload", models.JSONField(blank=True, null=True)),
                (
                    "resolved_by",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("webhook", "Webhook"),
                            ("fallback", "Fallback verification"),
                            ("callback", "Redirect callback"),
                            ("sweeper", "Stale payment sweeper"),
                        ],
                        max_length=20,
                        null=True,
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("resolved_at", models.DateTimeField(blank=True, null=True)),
                (
                    "order",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payment_records",
                        to="orders.customerorder",
                    ),
                ),
            ],
            options={
                "indexes": [models.Index(fields=["status", "created_at"], name="payment_status_created_idx")],
            },
        ),
    ]
