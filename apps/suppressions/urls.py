from django.urls import path
from . import views

urlpatterns = [
    path('webhooks/sendgrid/', views.sendgrid_webhook, name='marketing-sendgrid-webhook'),
    path('unsubscribe/<str:token>/', views.unsubscribe, name='marketing-unsubscribe'),
    path('preferences/<str:token>/', views.preferences, name='marketing-preferences'),
]
