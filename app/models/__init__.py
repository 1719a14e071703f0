# Access-control integration: Database Models
# Import all models here for SQLAlchemy discovery

from app.models.integration_credential import IntegrationCredential   # noqa
from app.models.access_token import AccessToken                       # noqa
from app.models.access_event import AccessEvent                       # noqa
from app.models.attendance import AttendanceRecord                    # noqa
from app.models.person_mapping import PersonMapping                   # noqa
from app.models.membership import Branch, Member, Membership, AccessDoor  # noqa
from app.models.member_access import MemberAccessOverride, MemberAccessCredential  # noqa
from app.models.sync_log import SyncLog                               # noqa
