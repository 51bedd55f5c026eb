from django.urls import path

from .views import DownloadView, ProductFormatsView, StreamView

urlpatterns = [
    path('stream/<int:product_id>/<str:track_index>/', StreamView.as_view(), name='audio-stream'),
    path('download/<int:product_id>/<str:fmt>/', DownloadView.as_view(), name='audio-download'),
    path('products/<int:product_id>/formats/', ProductFormatsView.as_view(), name='audio-formats'),
]
