"""
Management command for format bundles and demo files.

Usage:
    python manage.py audio_formats --product 7            # Build bundles for product 7
    python manage.py audio_formats --all --force          # Rebuild every product
    python manage.py audio_formats --product 7 --delete-demos
    python manage.py audio_formats --purge-purchased
"""

from django.core.management.base import BaseCommand, CommandError

from contracts.models import Product
from audio.conf import get_audio_settings
from audio.exceptions import TranscoderNotConfigured
from audio.services.demo import DemoService
from audio.services.formats import FormatProcessor
from audio.services.metadata import FORMATS_WARNING


class Command(BaseCommand):
    help = 'Generate format bundles, delete demos and purge purchaser files'

    def add_arguments(self, parser):
        parser.add_argument(
            '--product',
            action='append',
            type=int,
            dest='products',
            default=[],
            help='Product id to process (repeatable)',
        )
        parser.add_argument(
            '--all',
            action='store_true',
            help='Process every downloadable product',
        )
        parser.add_argument(
            '--force',
            action='store_true',
            help='Rebuild bundles even if the audio did not change',
        )
        parser.add_argument(
            '--delete-demos',
            action='store_true',
            help='Delete demo files of the selected products instead of building bundles',
        )
        parser.add_argument(
            '--purge-purchased',
            action='store_true',
            help='Empty the purchaser-specific file directory',
        )

    def handle(self, *args, **options):
        config = get_audio_settings()
        product_ids = list(options['products'])
        if options['all']:
            product_ids = list(Product.objects.filter(downloadable=True).values_list('pk', flat=True))

        if not product_ids and not options['purge_purchased']:
            raise CommandError('Nothing to do: pass --product ID, --all or --purge-purchased')

        if options['purge_purchased']:
            DemoService(config).purge_purchased()
            self.stdout.write(self.style.SUCCESS(f'Purged {config.purchased_root}'))

        if options['delete_demos']:
            demos = DemoService(config)
            for product_id in product_ids:
                removed = demos.delete_product_demos(product_id)
                self.stdout.write(f'Product {product_id}: deleted {removed} demo files')
            return

        if not product_ids:
            return

        processor = FormatProcessor(config)
        for product_id in product_ids:
            self.stdout.write(self.style.NOTICE(f'Processing product {product_id}...'))
            if options['force']:
                processor.clear_hash(product_id)
            try:
                result = processor.process_product(product_id, force=options['force'])
            except TranscoderNotConfigured as e:
                processor.store.set(product_id, FORMATS_WARNING, str(e))
                raise CommandError(str(e)) from e

            if result.status == 'processed':
                self.stdout.write(
                    self.style.SUCCESS(
                        f"Product {product_id}: {', '.join(result.formats) or 'no formats'}"
                    )
                )
                for failure in result.failures:
                    self.stdout.write(self.style.WARNING(f'  {failure}'))
            else:
                self.stdout.write(f'Product {product_id}: {result.status}')
