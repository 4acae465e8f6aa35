from django.contrib import admin

from .models import Student


@admin.register(Student)
class StudentAdmin(admin.ModelAdmin):
    list_display = (
        'admission_number',
        'first_name',
        'last_name',
        'school',
        'current_class',
        'status',
        'is_active',
    )
    list_filter = ('school', 'status', 'is_active', 'is_archived')
    search_fields = ('admission_number', 'first_name', 'last_name')
