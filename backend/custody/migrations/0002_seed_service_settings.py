from django.db import migrations


def seed_service_settings(apps, schema_editor):
    ServiceSettings = apps.get_model("custody", "ServiceSettings")
    ServiceSettings.objects.get_or_create(id=1)


class Migration(migrations.Migration):
    dependencies = [
        ("custody", "0001_initial"),
    ]

    operations = [
        migrations.RunPython(seed_service_settings, migrations.RunPython.noop),
    ]
