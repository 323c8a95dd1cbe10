"""Fixed names shared between the patch engine and the injected loader."""

# ── Engine version (recorded in every patched artifact) ─────────────────────
VERSION_CODE = 7
VERSION_NAME = "0.7.0"

# ── Reserved archive paths ──────────────────────────────────────────────────
ANDROID_MANIFEST_XML = "AndroidManifest.xml"
RESOURCES_ARSC       = "resources.arsc"

ASSET_ROOT                  = "assets/nexpatch/"
CONFIG_ASSET_PATH           = ASSET_ROOT + "config.json"
LOADER_DEX_ASSET_PATH       = ASSET_ROOT + "loader.dex"
ORIGINAL_APK_ASSET_PATH     = ASSET_ROOT + "origin.apk"
EMBEDDED_MODULES_ASSET_PATH = ASSET_ROOT + "modules/"
NATIVE_LIB_ASSET_DIR        = ASSET_ROOT + "so/"
NATIVE_LIB_NAME             = "libnexpatch.so"
BOOTSTRAP_DEX_ENTRY         = "classes.dex"

# Payload file names inside NEXPATCH_PAYLOAD_DIR
PAYLOAD_METALOADER_DEX = "metaloader.dex"
PAYLOAD_LOADER_DEX     = "loader.dex"
PAYLOAD_SO_DIR         = "so"

PATCH_FILE_SUFFIX = "-nexpatched.apk"

# ── Loader classes / manifest keys ──────────────────────────────────────────
PROXY_APP_COMPONENT_FACTORY = "org.nexpatch.metaloader.AppComponentFactoryStub"
META_DATA_KEY               = "nexpatch"

# Keys that mark an archive as an Xposed module
MODULE_META_KEY       = "xposedminversion"
MODULE_INIT_LIST_PATH = "META-INF/xposed/java_init.list"

# ABIs the loader ships native code for
SUPPORTED_ABIS = ("armeabi-v7a", "arm64-v8a", "x86", "x86_64")
ABI_ALIASES    = {"armeabi": "armeabi-v7a"}

# ── Android framework attribute resource ids ────────────────────────────────
ANDROID_NS = "http://schemas.android.com/apk/res/android"

ATTR_NAME                  = 0x01010003
ATTR_PERMISSION_PROTECTION = 0x01010009
ATTR_DEBUGGABLE            = 0x0101000f
ATTR_VALUE                 = 0x01010024
ATTR_MIN_SDK_VERSION       = 0x0101020c
ATTR_VERSION_CODE          = 0x0101021b
ATTR_TARGET_SDK_VERSION    = 0x01010270
ATTR_APP_COMPONENT_FACTORY = 0x0101057a

# Highest targetSdkVersion that still accepts a v1-only signature
V1_ONLY_MAX_TARGET_SDK = 29

# ── Signing ─────────────────────────────────────────────────────────────────
DEFAULT_SIGNER_NAME    = "CERT"
DEFAULT_KEY_ALIAS      = "key0"
DEFAULT_STORE_PASSWORD = "123456"
V3_MIN_SDK             = 28
CREATED_BY             = f"nexpatch {VERSION_NAME}"
