VERSION = '0.4.0'

MINUTE_IN_SECONDS = 60
WEEK_IN_SECONDS = 7 * 24 * 60 * 60

ACTIVITY_JSON = 'application/activity+json'

# Object types a Create/Update may carry and still count as handled
OBJECT_TYPES = (
    'Article',
    'Audio',
    'Document',
    'Event',
    'Image',
    'Note',
    'Page',
    'Place',
    'Profile',
    'Relationship',
    'Tombstone',
    'Video',
)

# Back-references to the quoted post, newest convention first
QUOTE_PROPERTIES = ('quote', 'quoteUri', 'quoteUrl', '_misskey_quote')

COLLECTION_SYNC_HEADER = 'Collection-Synchronization'
COLLECTION_TYPE_FOLLOWERS = 'followers'
