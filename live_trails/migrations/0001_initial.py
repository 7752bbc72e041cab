from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='LocationSample',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('user_id', models.CharField(db_index=True, help_text='Identity of the publishing user', max_length=150)),
                ('latitude', models.FloatField(help_text='Latitude in decimal degrees (-90 to +90)')),
                ('longitude', models.FloatField(help_text='Longitude in decimal degrees (-180 to +180)')),
                ('timestamp', models.BigIntegerField(db_index=True, help_text='Publisher-assigned time in ms since the epoch, monotonic per user')),
                ('received_at', models.DateTimeField(auto_now_add=True, help_text='When the store committed this sample')),
            ],
            options={
                'verbose_name': 'Location Sample',
                'verbose_name_plural': 'Location Samples',
                'ordering': ['user_id', 'timestamp'],
                'constraints': [models.UniqueConstraint(fields=('user_id', 'timestamp'), name='unique_sample_per_user_timestamp')],
            },
        ),
        migrations.CreateModel(
            name='PresenceRecord',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('user_id', models.CharField(help_text='Identity of the user this record belongs to', max_length=150, unique=True)),
                ('online', models.BooleanField(default=False, help_text='Whether the owning session last declared itself online')),
                ('last_online', models.FloatField(blank=True, help_text='Time of the last online/offline transition or heartbeat, ms since the epoch', null=True)),
                ('last_seen', models.FloatField(blank=True, help_text='Time of the last heartbeat, ms since the epoch', null=True)),
                ('email', models.CharField(blank=True, default='', help_text='Email of the user, if known', max_length=254)),
                ('display_name', models.CharField(blank=True, default='', help_text='Name shown to other users', max_length=200)),
                ('updated_at', models.DateTimeField(auto_now=True, help_text='When the store last committed a write to this record')),
            ],
            options={
                'verbose_name': 'Presence Record',
                'verbose_name_plural': 'Presence Records',
                'ordering': ['user_id'],
            },
        ),
    ]
