# Chat hub wire protocol constants (numeric envelope keys and event types)

PROTOCOL_VERSION = 1

# Envelope keys
K_V = 0
K_T = 1
K_ID = 2
K_TS = 3
K_SRC = 4
K_ROOM = 5
K_BODY = 6

# Handshake
T_HELLO = 1
T_WELCOME = 2
T_ROOM_LIST = 3

# Rooms
T_SWITCH_ROOM = 10
T_LOAD_HISTORY = 11

# Messages
T_CHAT_MESSAGE = 20
T_PRIVATE_MESSAGE = 21
T_PRIVATE_MESSAGE_SENT = 22
T_EDIT_MESSAGE = 23
T_MESSAGE_EDITED = 24
T_DELETE_MESSAGE = 25
T_MESSAGE_DELETED = 26

# Reactions
T_ADD_REACTION = 30
T_REMOVE_REACTION = 31
T_REACTION_UPDATE = 32

# Presence
T_TYPING = 40
T_TYPING_USERS = 41
T_UPDATE_USER_LIST = 42

# Read state and notifications
T_MARK_READ = 50
T_READ_RECEIPT_UPDATE = 51
T_NOTIFICATION = 52

# Blocks
T_BLOCK_USER = 60
T_UNBLOCK_USER = 61

T_PING = 70
T_PONG = 71

T_ERROR = 90

# Client types
CLIENT_WEB = "web"
CLIENT_DESKTOP = "desktop"
CLIENT_API = "api"
CLIENT_TYPES = (CLIENT_WEB, CLIENT_DESKTOP, CLIENT_API)

# Roles
ROLE_USER = "user"
ROLE_ADMIN = "admin"

# Room types
ROOM_TEXT = "text"
ROOM_VOICE = "voice"
ROOM_ANNOUNCEMENTS = "announcements"
ROOM_TYPES = (ROOM_TEXT, ROOM_VOICE, ROOM_ANNOUNCEMENTS)

HISTORY_LIMIT = 50
MAX_MESSAGE_CHARS = 2000
USERNAME_MAX_CHARS = 32
