from rest_framework import permissions
from rest_framework.response import Response
from rest_framework.views import APIView

from .permissions import resolve_capabilities
from .serializers import UserSerializer


class CurrentUserView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def get(self, request):
        data = UserSerializer(request.user).data
        data["capabilities"] = sorted(resolve_capabilities(request))
        return Response(data)
