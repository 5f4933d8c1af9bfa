from rest_framework import status


class DeliveryError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST


class DeliveryValidationError(DeliveryError):
    status_code = status.HTTP_400_BAD_REQUEST


class DeliveryNotFound(DeliveryError):
    status_code = status.HTTP_404_NOT_FOUND


class DeliveryConflict(DeliveryError):
    status_code = status.HTTP_409_CONFLICT


class AssignmentConflict(DeliveryConflict):
    pass


class InvalidAssignmentState(DeliveryError):
    status_code = status.HTTP_400_BAD_REQUEST
