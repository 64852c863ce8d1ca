#!/usr/bin/env python3
"""
Bash Script Builder — provisioning, cleanup, permission, repair and
reconfiguration scripts generated from vconfs

Input variables are fully expanded. A generated script declares them at
the top and its body uses ordinary bash ``$VAR`` references. Every step
checks current state first, so running a script twice is harmless.

Nothing here touches a remote host; the executor ships the text.
"""

import logging
import shlex
from datetime import datetime
from typing import Dict, List, Sequence, Callable

from fleet.errors import ValidationError
from remote.executor import single_quote

logger = logging.getLogger(__name__)

PROVISION_REQUIRED = (
    "VHOST", "VNODE", "UUSER", "U_UID", "U_GID", "U_SHL", "UPATH", "WPATH",
    "MPATH", "C_FPM", "C_WEB", "WUGID", "OSTYP", "SQCMD", "UPASS", "APASS",
)

# Sections a repair script may rerun, in provisioning order
REPAIR_SECTIONS = ("user", "database", "directory", "config", "permissions", "services")

# OS ids whose php-fpm pools live in php-fpm.d instead of pool.d
FPM_D_SYSTEMS = ("alpine", "manjaro", "cachyos", "arch")

WRITABLE_WEB_DIRS = (
    "var/cache",
    "var/log",
    "var/tmp",
    "uploads",
    "wp-content",
    "storage",
    "bootstrap/cache",
    "app/storage",
    "app/bootstrap/cache",
    "app/public/wp-content",
)

_POOL_DIR_SNIPPET = (
    'if [[ "$OSTYP" == "alpine" ]] || [[ "$OSTYP" == "manjaro" ]] '
    '|| [[ "$OSTYP" == "cachyos" ]] || [[ "$OSTYP" == "arch" ]]; then\n'
    '    POOL_DIR="$C_FPM/php-fpm.d"\n'
    'else\n'
    '    POOL_DIR="$C_FPM/pool.d"\n'
    'fi'
)

USER_SECTION = """# 1. Create system user
echo ">>> Step 1: System User"
if id -u "$UUSER" &>/dev/null; then
    echo "    ✓ User $UUSER already exists (UID: $U_UID)"
else
    [[ $(getent group sudo) ]] || groupadd -r sudo
    echo "    → Creating user $UUSER (UID: $U_UID)"
    {useradd}
    {chpasswd}
    echo "    ✓ User created: $UUSER"
fi"""

DATABASE_SECTION = """# 2. Create database entry
echo ">>> Step 2: Database Entry"
if command -v "${SQCMD%% *}" &>/dev/null; then
    VHOST_COUNT=$(echo "SELECT COUNT(id) FROM vhosts WHERE domain = '$VHOST'" | $SQCMD 2>/dev/null || echo "0")
    if [[ -z "$VHOST_COUNT" || "$VHOST_COUNT" == "0" ]]; then
        echo "    → Creating database entry for $VHOST"
        echo "INSERT INTO vhosts (domain, uid, gid, active, created_at, updated_at) VALUES ('$VHOST', $U_UID, $U_GID, 1, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)" | $SQCMD
        echo "    ✓ Database entry created"
    else
        echo "    ✓ Database entry already exists"
    fi
else
    echo "    ⚠ ${SQCMD%% *} not found, skipping database entry"
fi"""

DIRECTORY_SECTION = """# 3. Create directory structure
echo ">>> Step 3: Directory Structure"
if [[ -d "$WPATH/app/public" && -d "$MPATH" ]]; then
    echo "    ✓ Directory structure already exists under $UPATH"
else
    echo "    → Creating directory structure"
    mkdir -p "$MPATH"
    mkdir -p "$WPATH"/{app/public,log,run}
    echo "    ✓ Directories created"
fi"""

PHP_FPM_SECTION = """# 4. PHP-FPM pool configuration
echo ">>> Step 4: PHP-FPM Pool"
if [[ -d "$C_FPM" ]]; then
%s
    mkdir -p "$POOL_DIR"
    if [[ ! -f "$POOL_DIR/$VHOST.conf" ]]; then
        echo "    → Creating PHP-FPM pool"
        cat > "$POOL_DIR/$VHOST.conf" <<POOLEOF
[$VHOST]
user = $U_UID
group = $U_GID
listen = $WPATH/run/php-fpm.sock
listen.owner = $WUGID
listen.group = $WUGID
include = $C_FPM/common.conf
POOLEOF
        echo "    ✓ PHP-FPM pool created"
        if [[ -f "$POOL_DIR/www.conf" ]]; then
            mv "$POOL_DIR/www.conf" "$C_FPM/"
            echo "    ✓ Moved www.conf out of the pool directory"
        fi
    else
        echo "    ✓ PHP-FPM pool already exists"
    fi
else
    echo "    ⚠ PHP-FPM not found at $C_FPM, skipping"
fi""" % "\n".join("    " + line for line in _POOL_DIR_SNIPPET.splitlines())

NGINX_SECTION = r"""# 5. nginx vhost configuration
echo ">>> Step 5: nginx Configuration"
if [[ -d "$C_WEB" ]]; then
    mkdir -p "$C_WEB/sites-enabled"
    NGINX_CONF="$C_WEB/sites-enabled/$VHOST"
    if [[ ! -f "$NGINX_CONF" ]]; then
        echo "    → Creating nginx vhost config"
        cat > "$NGINX_CONF" <<NGINXEOF
server {
    listen                      80;
    server_name                 www.$VHOST;
    return 301                  http://$VHOST\$request_uri;
}
server {
    listen                      80;
    server_name                 $VHOST;
    root                        $WPATH/app/public;
    access_log                  $WPATH/log/access.log;
    error_log                   $WPATH/log/error.log;
    include                     /etc/nginx/common.conf;
    location ~ \.php\$ {
        include                 fastcgi.conf;
        fastcgi_pass            unix:$WPATH/run/php-fpm.sock;
    }
}
NGINXEOF
        echo "    ✓ nginx config created"
        if nginx -t &>/dev/null; then
            echo "    ✓ nginx config valid"
        else
            echo "    ⚠ nginx config test failed (will try reload anyway)"
        fi
    else
        echo "    ✓ nginx config already exists"
    fi
else
    echo "    ⚠ nginx not found at $C_WEB, skipping"
fi"""

WEB_FILES_SECTION = """# 6. Create web files
echo ">>> Step 6: Web Files"
WEBROOT="$WPATH/app/public"
if [[ -f "$WEBROOT/index.html" || -f "$WEBROOT/index.php" ]]; then
    echo "    ✓ Web files already exist"
else
    echo "    → Creating index.html"
    cat > "$WEBROOT/index.html" <<HTMLEOF
<!DOCTYPE html><title>$VHOST</title><h1 style="text-align:center">$VHOST</h1>
HTMLEOF
    echo "    ✓ index.html created"
fi
if [[ ! -f "$WEBROOT/phpinfo.php" ]]; then
    echo "    → Creating phpinfo.php"
    cat > "$WEBROOT/phpinfo.php" <<'PHPEOF'
<?php error_log(__FILE__.' '.$_SERVER['REMOTE_ADDR']); phpinfo();
PHPEOF
    echo "    ✓ phpinfo.php created"
fi"""

PERMISSIONS_SECTION = """# 7. Set permissions
echo ">>> Step 7: Permissions"
echo "    → Setting ownership: $UUSER:$WUGID"
chown -R "$UUSER:$WUGID" "$UPATH"
chmod 755 "$UPATH"
chmod 755 "$WPATH"
chmod 755 "$WPATH/app"
chmod 755 "$WPATH/app/public"
chmod 750 "$WPATH/log"
chmod 750 "$WPATH/run"
echo "    ✓ Permissions set\""""

FINALIZE_SECTION = """# 8. Final commands
echo ">>> Step 8: Finalization"
if [[ -f ~/.rc/_shrc ]]; then
    set +u
    source ~/.rc/_shrc
    set -u
    if command -v serva &>/dev/null; then
        serva restart web && echo "    ✓ Services restarted via serva" || true
    else
        systemctl reload nginx php*-fpm 2>/dev/null && echo "    ✓ Services reloaded" || true
    fi
else
    echo "    → Reloading services"
    systemctl reload nginx 2>/dev/null && echo "    ✓ nginx reloaded" || true
    systemctl reload 'php*-fpm' 2>/dev/null && echo "    ✓ php-fpm reloaded" || true
fi"""

FOOTER_SECTION = """echo ""
echo "=== ✓ VHost $VHOST provisioned successfully ==="
echo "    User: $UUSER (UID: $U_UID)"
echo "    Path: $UPATH"
echo "    Web:  $WPATH"
echo "    Mail: $MPATH\""""

CLEANUP_SCRIPT = """#!/bin/bash
set -euo pipefail

VHOST="$1"
UUSER="$2"
UPATH="$3"
WPATH="$4"
MPATH="$5"
C_FPM="$6"
OSTYP="$7"
SQCMD="$8"

echo "=== NetServa VHost Cleanup: $VHOST ==="

# 1. Remove system user
if id -u "$UUSER" &>/dev/null; then
    echo ">>> Step 1: Removing user $UUSER"
    userdel -rf "$UUSER" 2>/dev/null || echo "    ⚠ Warning: userdel failed (continuing)"
else
    echo ">>> Step 1: User $UUSER not found (already removed)"
fi

# 2. Remove database entry
echo ">>> Step 2: Removing database entry"
if command -v "${SQCMD%% *}" &>/dev/null; then
    echo "DELETE FROM vhosts WHERE domain = '$VHOST'" | $SQCMD 2>/dev/null || true
    echo "    ✓ Database entry removed"
else
    echo "    ⚠ ${SQCMD%% *} not found, skipping"
fi

# 3. Remove nginx configuration
echo ">>> Step 3: Removing nginx configuration"
rm -f "/etc/nginx/sites-available/$VHOST" "/etc/nginx/sites-enabled/$VHOST"
if command -v nginx &>/dev/null; then
    if nginx -t &>/dev/null; then
        systemctl reload nginx 2>/dev/null && echo "    ✓ nginx reloaded" || true
    else
        echo "    ⚠ nginx config has errors, skipping reload"
    fi
fi

# 4. Remove PHP-FPM pool
echo ">>> Step 4: Removing PHP-FPM pool"
if [[ -d "$C_FPM" ]]; then
    rm -f "$C_FPM/php-fpm.d/$VHOST.conf" "$C_FPM/pool.d/$VHOST.conf"
    systemctl reload 'php*-fpm' 2>/dev/null && echo "    ✓ php-fpm reloaded" || true
fi

# 5. Remove SSL material
echo ">>> Step 5: Removing SSL certificates"
rm -rf "/etc/ssl/le/$VHOST" "/etc/ssl/le/$VHOST."*
rm -f "/etc/letsencrypt/renewal/$VHOST.conf"

# 6. Remove directories
echo ">>> Step 6: Removing directories"
for DIR in "$WPATH" "$MPATH" "$UPATH"; do
    if [[ -d "$DIR" ]]; then
        rm -rf "$DIR"
        echo "    ✓ Removed: $DIR"
    else
        echo "    ✓ Already removed: $DIR"
    fi
done

echo ""
echo "=== ✓ VHost $VHOST cleaned up successfully ==="
"""

RECONFIGURE_SCRIPT = """#!/bin/bash
set -euo pipefail

VHOST="$1"
OSTYP="$2"
OLD_FPM="$3"
NEW_FPM="$4"
OLD_WPATH="$5"
NEW_WPATH="$6"
UUSER="$7"
WUGID="$8"
C_WEB="$9"

pool_dir() {
    case "$OSTYP" in
        alpine|manjaro|cachyos|arch) echo "$1/php-fpm.d" ;;
        *) echo "$1/pool.d" ;;
    esac
}

echo "=== NetServa VHost Update: $VHOST ==="

if [[ "$OLD_FPM" != "$NEW_FPM" ]]; then
    echo ">>> Moving PHP-FPM pool to $NEW_FPM"
    OLD_POOL="$(pool_dir "$OLD_FPM")/$VHOST.conf"
    NEW_POOL="$(pool_dir "$NEW_FPM")/$VHOST.conf"
    if [[ ! -d "$NEW_FPM" ]]; then
        echo "    ✗ PHP-FPM not installed at $NEW_FPM" >&2
        exit 3
    fi
    mkdir -p "$(dirname "$NEW_POOL")"
    if [[ -f "$OLD_POOL" ]]; then
        sed "s|$OLD_FPM|$NEW_FPM|g" "$OLD_POOL" > "$NEW_POOL"
        rm -f "$OLD_POOL"
    fi
    echo "    ✓ Pool moved"
fi

if [[ "$OLD_WPATH" != "$NEW_WPATH" ]]; then
    echo ">>> Moving web root to $NEW_WPATH"
    if [[ -d "$OLD_WPATH" && ! -d "$NEW_WPATH" ]]; then
        mkdir -p "$(dirname "$NEW_WPATH")"
        mv "$OLD_WPATH" "$NEW_WPATH"
    fi
    mkdir -p "$NEW_WPATH"/{app/public,log,run}
    chown -R "$UUSER:$WUGID" "$NEW_WPATH"
    for CONF in "$C_WEB/sites-enabled/$VHOST" "$(pool_dir "$NEW_FPM")/$VHOST.conf"; do
        [[ -f "$CONF" ]] && sed -i "s|$OLD_WPATH|$NEW_WPATH|g" "$CONF"
    done
    echo "    ✓ Web root moved"
fi

if command -v nginx &>/dev/null && nginx -t &>/dev/null; then
    systemctl reload nginx 2>/dev/null || true
fi
systemctl reload 'php*-fpm' 2>/dev/null || true

echo "=== ✓ VHost $VHOST updated ==="
"""


class BashScriptBuilder:
    """
    Builds the bash scripts that bring a vnode in line with vconfs.

    Sections of the provisioning script, in order:
    header, variable declarations, system user, database entry,
    directories, PHP-FPM pool, nginx site, web files, permissions,
    finalization, footer.
    """

    def __init__(self, clock: Callable[[], datetime] = None):
        self._clock = clock or datetime.now

    # ── Provisioning ─────────────────────────────────────────────

    def build(self, variables: Dict[str, str]) -> str:
        missing = [k for k in PROVISION_REQUIRED if not variables.get(k)]
        if missing:
            raise ValidationError(f"Missing platform variables: {', '.join(missing)}")

        script = "\n\n".join([
            self.header(variables),
            self.declarations(variables),
            self.user_section(variables),
            DATABASE_SECTION,
            DIRECTORY_SECTION,
            PHP_FPM_SECTION,
            NGINX_SECTION,
            WEB_FILES_SECTION,
            PERMISSIONS_SECTION,
            FINALIZE_SECTION,
            FOOTER_SECTION,
        ])
        logger.debug(f"Built provisioning script for {variables['VHOST']} "
                     f"({script.count(chr(10)) + 1} lines)")
        return script

    def header(self, v: Dict[str, str], title: str = "Provisioning") -> str:
        timestamp = self._clock().strftime("%Y-%m-%d %H:%M:%S")
        return "\n".join([
            "#!/bin/bash",
            f"# NetServa VHost {title} Script",
            f"# Generated: {timestamp}",
            f"# Domain: {v['VHOST']}",
            f"# VNode: {v['VNODE']}",
            "",
            "set -euo pipefail",
            "",
            f"echo \"=== NetServa VHost {title}: {v['VHOST']} ===\"",
        ])

    @staticmethod
    def declarations(variables: Dict[str, str]) -> str:
        lines = ["# Platform variables (fully expanded from vconfs)"]
        lines.extend(f"{name}={single_quote(value)}" for name, value in variables.items())
        return "\n".join(lines)

    @staticmethod
    def user_section(v: Dict[str, str]) -> str:
        groups = " -G sudo,adm" if str(v["U_UID"]) == "1000" else ""
        useradd = (
            f'useradd -M -U{groups} -s "$U_SHL" -u "$U_UID" -d "$UPATH" -c "$VHOST" "$UUSER"'
        )
        if v.get("UPASS") and v.get("UPASS") != v.get("APASS"):
            chpasswd = 'echo "$UUSER:$UPASS" | chpasswd'
        else:
            chpasswd = "# User password same as admin, skipping"
        return USER_SECTION.replace("{useradd}", useradd).replace("{chpasswd}", chpasswd)

    # ── Repair ───────────────────────────────────────────────────

    def build_repair(self, variables: Dict[str, str], sections: Sequence[str]) -> str:
        """
        Rerun selected provisioning sections against an existing vhost.

        Sections always run in provisioning order, whatever order they
        are requested in. Passwords are optional here: without UPASS the
        user section creates the account and leaves its password alone.
        """
        unknown = sorted(set(sections) - set(REPAIR_SECTIONS))
        if unknown:
            raise ValidationError(f"Unknown repair sections: {', '.join(unknown)}")
        if not sections:
            raise ValidationError("No repair sections requested")
        missing = [k for k in PROVISION_REQUIRED
                   if k not in ("UPASS", "APASS") and not variables.get(k)]
        if missing:
            raise ValidationError(f"Missing platform variables: {', '.join(missing)}")

        bodies = {
            "user": lambda: self.user_section(variables),
            "database": lambda: DATABASE_SECTION,
            "directory": lambda: DIRECTORY_SECTION,
            "config": lambda: PHP_FPM_SECTION + "\n\n" + NGINX_SECTION,
            "permissions": lambda: PERMISSIONS_SECTION,
            "services": lambda: FINALIZE_SECTION,
        }
        parts = [self.header(variables, title="Repair"), self.declarations(variables)]
        parts.extend(bodies[name]() for name in REPAIR_SECTIONS if name in sections)
        parts.append('echo ""\necho "=== ✓ VHost $VHOST repaired ==="')
        return "\n\n".join(parts)

    # ── Cleanup ──────────────────────────────────────────────────

    @staticmethod
    def build_cleanup(variables: Dict[str, str]) -> str:
        """Cleanup script; values arrive as $1..$8, see cleanup_args()."""
        return CLEANUP_SCRIPT

    @staticmethod
    def cleanup_args(v: Dict[str, str]) -> List[str]:
        vhost = v["VHOST"]
        upath = v.get("UPATH") or f"/srv/{vhost}"
        return [
            vhost,
            v.get("UUSER") or "unknown",
            upath,
            v.get("WPATH") or f"{upath}/web",
            v.get("MPATH") or f"{upath}/msg",
            v.get("C_FPM") or "/etc/php/8.4/fpm",
            v.get("OSTYP") or "debian",
            v.get("SQCMD") or "sqlite3 /var/lib/sqlite/sysadm/sysadm.db",
        ]

    # ── Permissions ──────────────────────────────────────────────

    @staticmethod
    def permission_commands(v: Dict[str, str], web_only: bool = False,
                            mail_only: bool = False) -> List[str]:
        q = shlex.quote
        uuser = v.get("UUSER") or "www-data"
        wugid = v.get("WUGID") or "www-data"
        owner = q(f"{uuser}:{wugid}")
        upath, wpath, mpath = v.get("UPATH"), v.get("WPATH"), v.get("MPATH")
        vhost = v.get("VHOST", "")
        commands = []

        if upath:
            commands.append(f"chown {owner} {q(upath)}")
            commands.append(f"chmod 755 {q(upath)}")

        if wpath and not mail_only:
            commands.append(f"chown -R {owner} {q(wpath)}")
            commands.append(f"find {q(wpath)} -type d -exec chmod 755 {{}} \\;")
            commands.append(f"find {q(wpath)} -type f -exec chmod 644 {{}} \\;")
            for sub in ("log", "run"):
                path = q(f"{wpath}/{sub}")
                commands.append(f"[ -d {path} ] && chmod 750 {path} || true")
            for sub in WRITABLE_WEB_DIRS:
                path = q(f"{wpath}/{sub}")
                commands.append(f"[ -d {path} ] && find {path} -type d -exec chmod 775 {{}} \\; || true")
                commands.append(f"[ -d {path} ] && find {path} -type f -exec chmod 664 {{}} \\; || true")

        if mpath and not web_only:
            commands.append(f"chown -R {owner} {q(mpath)}")
            commands.append(f"chmod 750 {q(mpath)}")
            commands.append(f"find {q(mpath)} -type d -exec chmod 750 {{}} \\;")
            commands.append(f"find {q(mpath)} -type f -exec chmod 640 {{}} \\;")

        if vhost and not (web_only or mail_only):
            le = f"/etc/ssl/le/{vhost}"
            commands.extend([
                f"[ -d {q(le)} ] && chown root:root {q(le)} || true",
                f"[ -d {q(le)} ] && chmod 700 {q(le)} || true",
                f"[ -f {q(le + '/fullchain.pem')} ] && chmod 644 {q(le + '/fullchain.pem')} || true",
                f"[ -f {q(le + '/privkey.pem')} ] && chmod 600 {q(le + '/privkey.pem')} || true",
            ])
            ssl = f"/etc/ssl/{vhost}"
            commands.extend([
                f"[ -d {q(ssl)} ] && chown root:root {q(ssl)} || true",
                f"[ -d {q(ssl)} ] && chmod 755 {q(ssl)} || true",
                f"[ -f {q(f'{ssl}/{vhost}.crt')} ] && chmod 644 {q(f'{ssl}/{vhost}.crt')} || true",
                f"[ -f {q(f'{ssl}/{vhost}.key')} ] && chmod 600 {q(f'{ssl}/{vhost}.key')} || true",
            ])
            log = f"/var/log/{vhost}"
            commands.extend([
                f"[ -d {q(log)} ] && chown {owner} {q(log)} || true",
                f"[ -d {q(log)} ] && chmod 755 {q(log)} || true",
                f"[ -d {q(log)} ] && find {q(log)} -type f -exec chmod 644 {{}} \\; || true",
            ])

        return commands

    def build_permissions(self, v: Dict[str, str], web_only: bool = False,
                          mail_only: bool = False) -> str:
        commands = self.permission_commands(v, web_only=web_only, mail_only=mail_only)
        return "\n".join([
            "#!/bin/bash",
            "set -euo pipefail",
            f"echo \"=== NetServa permissions: {v.get('VHOST', '')} ===\"",
            *commands,
            f"echo \"    ✓ {len(commands)} permission commands applied\"",
        ])

    # ── Reconfiguration (chvhost) ────────────────────────────────

    @staticmethod
    def build_reconfigure() -> str:
        return RECONFIGURE_SCRIPT

    @staticmethod
    def reconfigure_args(old: Dict[str, str], new: Dict[str, str]) -> Sequence[str]:
        return [
            new["VHOST"],
            new.get("OSTYP") or "debian",
            old.get("C_FPM", ""),
            new.get("C_FPM", ""),
            old.get("WPATH", ""),
            new.get("WPATH", ""),
            new.get("UUSER", ""),
            new.get("WUGID", ""),
            new.get("C_WEB") or "/etc/nginx",
        ]
