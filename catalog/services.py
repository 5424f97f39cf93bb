"""Read-only catalog lookups used by the billing core."""
from catalog.models import Bundle


def get_bundle(bundle_id):
    """Return the Bundle for bundle_id, or None when it does not exist or the id is malformed."""
    try:
        return Bundle.objects.get(pk=int(bundle_id))
    except (TypeError, ValueError, Bundle.DoesNotExist):
        return None
