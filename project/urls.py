# The progress engine exposes services and serializers only; HTTP routing
# belongs to the hosting application.
urlpatterns = []
