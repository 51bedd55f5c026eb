from django.urls import reverse
from rest_framework import serializers


class ProductFormatsSerializer(serializers.Serializer):
    """Format bundle state of a product, read from its metadata."""
    product_id = serializers.IntegerField(read_only=True)
    available_formats = serializers.ListField(
        child=serializers.CharField(),
        read_only=True
    )
    formats_generated_at = serializers.CharField(read_only=True, allow_null=True)
    formats_warning = serializers.CharField(read_only=True, allow_null=True)

    # Archive download URLs keyed by format
    downloads = serializers.SerializerMethodField()

    def get_downloads(self, obj):
        request = self.context.get('request')
        links = {}
        for fmt in obj.get('available_formats') or []:
            path = reverse('audio-download', kwargs={'product_id': obj['product_id'], 'fmt': fmt})
            links[fmt] = request.build_absolute_uri(path) if request else path
        return links
