import discord
from discord import app_commands

from constants import ADMIN_ROLES


def admin_meta(**meta):
    """Attach help metadata (permissions, affects, notes) to an admin command."""
    def decorator(func):
        func.admin_help = meta
        return func
    return decorator


def is_admin(member: discord.abc.User | None) -> bool:
    if not isinstance(member, discord.Member):
        return False
    if member.guild_permissions.administrator:
        return True
    return any(r.name in ADMIN_ROLES for r in member.roles)


def admin_only():
    async def predicate(interaction: discord.Interaction) -> bool:
        if is_admin(interaction.user):
            return True
        raise app_commands.MissingAnyRole(list(ADMIN_ROLES))
    return app_commands.check(predicate)


def admin_help_embed(commands, title: str = "🤖 Admin Commands") -> discord.Embed:
    """One embed describing every command that carries ``admin_meta`` help."""
    e = discord.Embed(title=title, color=discord.Color.yellow())
    for command in commands:
        meta = getattr(command.callback, "admin_help", None)
        if meta is None:
            continue

        lines = [
            command.description or "No Description",
            f"🔐 {meta.get('permissions', 'Administrator')}",
            "⚙️ " + (", ".join(meta.get("affects", [])) or "None"),
        ]
        if "notes" in meta:
            lines.append(f"📝 {meta['notes']}")
        e.add_field(name=f"/{command.qualified_name}", value="\n".join(lines), inline=False)
    return e
