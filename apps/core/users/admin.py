from django.contrib import admin

from .models import AuditLog, User


@admin.register(User)
class UserAdmin(admin.ModelAdmin):
    list_display = ('username', 'role', 'school', 'is_staff')
    list_filter = ('role', 'school')
    search_fields = ('username', 'email')


@admin.register(AuditLog)
class AuditLogAdmin(admin.ModelAdmin):
    list_display = ('created_at', 'action', 'user', 'school', 'target_model', 'target_repr')
    list_filter = ('action', 'school', 'created_at')
    search_fields = ('details', 'target_repr', 'target_id', 'user__username')
    readonly_fields = [field.name for field in AuditLog._meta.fields]
