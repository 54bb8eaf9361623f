from django.urls import path
from . import views
app_name = "payments"
urlpatterns = [
    path("init", views.init_payment_view, name="init"),
    # browser redirects from the hosted checkout (read-only)
    path("success/<str:session_id>", views.payment_return_view, {"result": "success"}, name="success"),
    path("fail/<str:session_id>", views.payment_return_view, {"result": "fail"}, name="fail"),
    path("cancel/<str:session_id>", views.payment_return_view, {"result": "cancel"}, name="cancel"),
    # gateway server-to-server notification
    path("ipn/<str:session_id>", views.ipn_view, name="ipn"),
    path("status/<str:session_id>", views.payment_status_view, name="status"),
]
