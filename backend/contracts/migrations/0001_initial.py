# Generated migration for shared data contract

import django.core.validators
import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
    ]

    operations = [
        migrations.CreateModel(
            name='Product',
            fields=[
                ('id', models.BigAutoField(
                    auto_created=True,
                    primary_key=True,
                    serialize=False,
                    verbose_name='ID'
                )),
                ('name', models.CharField(
                    help_text='Product title',
                    max_length=255
                )),
                ('downloadable', models.BooleanField(
                    default=True,
                    help_text='Whether the product ships downloadable files'
                )),
                ('secure_demo', models.BooleanField(
                    blank=True,
                    null=True,
                    help_text='Serve truncated demos to non-purchasers (empty = global setting)'
                )),
                ('demo_percent', models.PositiveSmallIntegerField(
                    blank=True,
                    null=True,
                    validators=[django.core.validators.MaxValueValidator(100)],
                    help_text='Percentage of each track kept in demos (empty = global setting)'
                )),
                ('updated_at', models.DateTimeField(
                    auto_now=True,
                    help_text='Last time the product was saved'
                )),
            ],
            options={
                'verbose_name': 'Product',
                'verbose_name_plural': 'Products',
                'ordering': ['id'],
            },
        ),
        migrations.CreateModel(
            name='AudioAsset',
            fields=[
                ('id', models.BigAutoField(
                    auto_created=True,
                    primary_key=True,
                    serialize=False,
                    verbose_name='ID'
                )),
                ('index', models.CharField(
                    help_text='Stable track key within the product',
                    max_length=64
                )),
                ('name', models.CharField(
                    help_text='Display name of the track',
                    max_length=255
                )),
                ('file', models.CharField(
                    help_text='Local filesystem path or remote URL of the source file',
                    max_length=1024
                )),
                ('position', models.PositiveIntegerField(
                    default=0,
                    help_text='Order of the track within the product'
                )),
                ('product', models.ForeignKey(
                    help_text='Owning product',
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name='audio_assets',
                    to='contracts.product'
                )),
            ],
            options={
                'verbose_name': 'Audio Asset',
                'verbose_name_plural': 'Audio Assets',
                'ordering': ['position', 'id'],
            },
        ),
        migrations.CreateModel(
            name='ProductMeta',
            fields=[
                ('id', models.BigAutoField(
                    auto_created=True,
                    primary_key=True,
                    serialize=False,
                    verbose_name='ID'
                )),
                ('key', models.CharField(
                    help_text='Metadata key',
                    max_length=100
                )),
                ('value', models.JSONField(
                    blank=True,
                    null=True,
                    help_text='JSON-serializable value'
                )),
                ('updated_at', models.DateTimeField(
                    auto_now=True,
                    help_text='Last time the value changed'
                )),
                ('product', models.ForeignKey(
                    help_text='Product the value belongs to',
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name='meta',
                    to='contracts.product'
                )),
            ],
            options={
                'verbose_name': 'Product Meta',
                'verbose_name_plural': 'Product Meta',
            },
        ),
        migrations.AddConstraint(
            model_name='audioasset',
            constraint=models.UniqueConstraint(
                fields=('product', 'index'),
                name='audioasset_product_index_uniq'
            ),
        ),
        migrations.AddConstraint(
            model_name='productmeta',
            constraint=models.UniqueConstraint(
                fields=('product', 'key'),
                name='productmeta_product_key_uniq'
            ),
        ),
    ]
