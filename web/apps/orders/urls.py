from django.urls import path

from .views import (
    CancelOrderView,
    CheckoutView,
    OrderDetailView,
    OrderPaymentStatusView,
    OrdersCollectionView,
    OrderStatusView,
    OrderTimelineView,
    PaymentWebhookView,
    ResolveReconciliationCaseView,
    TrackOrderView,
    VerifyPaymentView,
)

app_name = "orders"

urlpatterns = [
    path("", OrdersCollectionView.as_view(), name="orders-collection"),
    path("checkout/", CheckoutView.as_view(), name="checkout"),
    path("track/", TrackOrderView.as_view(), name="track"),
    path("payments/webhook/", PaymentWebhookView.as_view(), name="payment-webhook"),
    path("payments/verify/", VerifyPaymentView.as_view(), name="payment-verify"),
    path(
        "reconciliation/<int:case_id>/resolve/",
        ResolveReconciliationCaseView.as_view(),
        name="reconciliation-resolve",
    ),
    path("<str:order_number>/", OrderDetailView.as_view(), name="orders-detail"),
    path("<str:order_number>/timeline/", OrderTimelineView.as_view(), name="orders-timeline"),
    path("<str:order_number>/status/", OrderStatusView.as_view(), name="orders-status"),
    path("<str:order_number>/payment-status/", OrderPaymentStatusView.as_view(), name="orders-payment-status"),
    path("<str:order_number>/cancel/", CancelOrderView.as_view(), name="orders-cancel"),
]
