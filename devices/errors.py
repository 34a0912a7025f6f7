DEVICE_NOT_FOUND_BY_ID = "Device with ID {} not found."
DEVICE_NOT_FOUND_BY_BARCODE = "Device with barcode {} not found."
DEVICE_BARCODE_ALREADY_EXISTS = "A device with barcode {} already exists."
DEVICE_STALE_REVISION = "Device {} was modified by another request. Reload it and try again."
DEVICE_ERROR_SAVING = "Error saving device."
DEVICE_IN_USE = "Device {} has an active assignment and cannot be deleted."
DEVICE_HAS_HISTORY = "Device {} has assignment history and cannot be deleted."
DEVICE_IDS_CANNOT_BE_EMPTY = "The list of device IDs cannot be empty."
DEVICE_ITEMS_CANNOT_BE_EMPTY = "The list of restore items cannot be empty."
DEVICES_NOT_FOUND = "The following devices were not found: {}."
DEVICE_MISSING_STATE = "Missing state for device {}."
DEVICE_ERROR_UPDATING_STATES = "An error occurred while updating the states of devices."
INVALID_STATUS = "Invalid status: {}."
INVALID_DEVICE_ID = "Invalid device ID: {}."

DEVICE_ALREADY_ASSIGNED = "The device {} is already assigned to another order."
DEVICE_NOT_AVAILABLE_FOR_ASSIGNMENT = "The device {} is not in a state that allows assignment."
DEVICE_ASSIGNMENT_NOT_FOUND = "No active assignment found for the device {}."
DEVICE_ASSIGNMENT_ORDER_MISMATCH = "The active assignment of device {} does not belong to the order {}."
ORDER_ID_CANNOT_BE_EMPTY = "The order ID cannot be null or empty."


class DeviceError(Exception):
    """Base error for device and assignment operations.

    ``context`` carries whatever the caller needs to act on the failure
    (ids, offending field); the JSON views merge it into the response body.
    """
    status_code = 500

    def __init__(self, message, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def as_dict(self):
        data = {'success': False, 'error': self.message}
        data.update(self.context)
        return data


class NotFound(DeviceError):
    status_code = 404


class Conflict(DeviceError):
    status_code = 409


class InvalidInput(DeviceError):
    status_code = 400


class InternalFailure(DeviceError):
    status_code = 500
